"""
Deal reference generator backed by a per-year counter row.

References look like ``DEAL-2026-0001``. The counter increment is a single UPDATE
inside the caller's transaction, so two concurrent deal creations can never draw
the same sequence and a rolled-back creation releases nothing visible.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import DealReferenceCounter, utc_now
from utils.atomic_transactions import insert_ignore_conflict, update_if

logger = logging.getLogger(__name__)


class DealReferenceGenerator:
    """Yearly sequential deal references"""

    @classmethod
    async def next_sequence(cls, session: AsyncSession, year: int) -> int:
        await insert_ignore_conflict(
            session,
            DealReferenceCounter,
            {"year": year, "last_sequence": 0},
            conflict_columns=("year",),
        )
        await update_if(
            session,
            DealReferenceCounter,
            where=[DealReferenceCounter.year == year],
            values={"last_sequence": DealReferenceCounter.last_sequence + 1},
        )
        # The UPDATE above holds the row lock until commit
        sequence = (await session.execute(
            select(DealReferenceCounter.last_sequence).where(DealReferenceCounter.year == year)
        )).scalar_one()
        return int(sequence)

    @classmethod
    def format_reference(cls, year: int, sequence: int, prefix: Optional[str] = None) -> str:
        return f"{prefix or Config.DEAL_REFERENCE_PREFIX}-{year}-{sequence:04d}"

    @classmethod
    async def generate(cls, session: AsyncSession, year: Optional[int] = None) -> str:
        year = year or utc_now().year
        sequence = await cls.next_sequence(session, year)
        reference = cls.format_reference(year, sequence)
        logger.debug(f"Generated deal reference {reference}")
        return reference
