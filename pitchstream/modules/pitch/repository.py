"""Pitch repository for database operations."""

import uuid
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pitchstream.modules.pitch.models import ElevatorPitch, ProcessingState


class PitchRepository:
    """Repository for ElevatorPitch CRUD operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_owner(self, owner_id: str) -> Optional[ElevatorPitch]:
        result = await self.session.execute(
            select(ElevatorPitch).where(ElevatorPitch.owner_id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, pitch_id: uuid.UUID) -> Optional[ElevatorPitch]:
        result = await self.session.execute(
            select(ElevatorPitch).where(ElevatorPitch.id == pitch_id)
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        owner_id: str,
        owner_role: Optional[str] = None,
        raw_key: Optional[str] = None,
        raw_bucket: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> ElevatorPitch:
        """Create a new pitch in the pending state."""
        pitch = ElevatorPitch(
            owner_id=owner_id,
            owner_role=owner_role,
            raw_key=raw_key,
            raw_bucket=raw_bucket,
            file_name=file_name,
            file_size=file_size,
        )
        self.session.add(pitch)
        await self.session.flush()
        return pitch

    async def delete(self, pitch: ElevatorPitch) -> None:
        await self.session.delete(pitch)
        await self.session.flush()

    async def list_ready_by_role(self, role: str) -> Sequence[ElevatorPitch]:
        """Ready pitches whose owner has the given role, newest first."""
        result = await self.session.execute(
            select(ElevatorPitch)
            .where(
                ElevatorPitch.owner_role == role,
                ElevatorPitch.processing_state == ProcessingState.READY.value,
            )
            .order_by(ElevatorPitch.created_at.desc())
        )
        return result.scalars().all()

    async def list_stale(self) -> Sequence[ElevatorPitch]:
        """Queued or processing pitches with a source, oldest update first.

        Only meaningful at startup, when no job can be running.
        """
        result = await self.session.execute(
            select(ElevatorPitch)
            .where(
                ElevatorPitch.processing_state.in_([
                    ProcessingState.QUEUED.value,
                    ProcessingState.PROCESSING.value,
                ]),
                ElevatorPitch.raw_key.is_not(None),
            )
            .order_by(ElevatorPitch.processing_updated_at.asc())
        )
        return result.scalars().all()

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
