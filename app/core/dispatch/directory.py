# app/core/dispatch/directory.py
"""
Landlords, properties, cleaners and the ranked property/cleaner links.

Thin validation on top of the repository; the dispatch core only reads
these records.
"""
from __future__ import annotations

from app.core.dispatch.domain import Cleaner, Landlord, Property, PropertyCleanerLink
from app.core.dispatch.errors import NotFoundError, ValidationError
from app.core.dispatch.models import (
    CreateCleanerRequest,
    CreateLandlordRequest,
    CreatePropertyRequest,
    SetPropertyCleanersRequest,
)
from app.core.dispatch.ports import DispatchRepository
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class DirectoryService:
    def __init__(self, repo: DispatchRepository):
        self._repo = repo

    async def create_landlord(self, req: CreateLandlordRequest) -> Landlord:
        landlord = await self._repo.create_landlord(req.name.strip())
        logger.info(f"Landlord created: {landlord.id}")
        return landlord

    async def create_property(self, req: CreatePropertyRequest) -> Property:
        await self._require_landlord(req.landlord_id)
        prop = await self._repo.create_property(req.landlord_id, req.name.strip(), req.address)
        logger.info(f"Property created: {prop.id} (landlord={req.landlord_id})")
        return prop

    async def create_cleaner(self, req: CreateCleanerRequest) -> Cleaner:
        await self._require_landlord(req.landlord_id)
        cleaner = await self._repo.create_cleaner(
            req.landlord_id, req.name.strip(), active=req.active, notes=req.notes
        )
        logger.info(f"Cleaner created: {cleaner.id} (landlord={req.landlord_id})")
        return cleaner

    async def set_property_cleaners(
        self, property_id: str, req: SetPropertyCleanersRequest
    ) -> list[PropertyCleanerLink]:
        prop = await self._repo.get_property(property_id)
        if prop is None:
            raise NotFoundError(f"Property {property_id} not found")

        for link in req.cleaners:
            cleaner = await self._repo.get_cleaner(link.cleaner_id)
            if cleaner is None or cleaner.landlord_id != prop.landlord_id:
                raise ValidationError(f"Cleaner {link.cleaner_id} does not belong to this landlord")

        links = await self._repo.set_property_cleaners(
            property_id,
            [(link.cleaner_id, link.priority, link.is_primary) for link in req.cleaners],
        )
        logger.info(f"Property {property_id}: {len(links)} cleaner link(s) set")
        return links

    async def _require_landlord(self, landlord_id: str) -> Landlord:
        landlord = await self._repo.get_landlord(landlord_id)
        if landlord is None:
            raise NotFoundError(f"Landlord {landlord_id} not found")
        return landlord
