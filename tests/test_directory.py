# tests/test_directory.py
"""Tests for landlord / property / cleaner management"""
import pytest

from app.core.dispatch.errors import NotFoundError, ValidationError
from app.core.dispatch.models import (
    CreateCleanerRequest,
    CreateLandlordRequest,
    CreatePropertyRequest,
    SetPropertyCleanersRequest,
)


class TestDirectory:
    @pytest.mark.asyncio
    async def test_create_chain(self, services):
        landlord = await services.directory.create_landlord(CreateLandlordRequest(name="  Lena  "))
        prop = await services.directory.create_property(
            CreatePropertyRequest(landlord_id=landlord.id, name="Flat 1")
        )
        cleaner = await services.directory.create_cleaner(
            CreateCleanerRequest(landlord_id=landlord.id, name="Alice", notes="keys at desk")
        )

        assert landlord.name == "Lena"
        assert prop.landlord_id == landlord.id
        assert cleaner.active and not cleaner.is_linked

    @pytest.mark.asyncio
    async def test_unknown_landlord(self, services):
        with pytest.raises(NotFoundError):
            await services.directory.create_property(CreatePropertyRequest(landlord_id="nope", name="Flat"))

    @pytest.mark.asyncio
    async def test_set_property_cleaners_ranked(self, services, world):
        links = await services.directory.set_property_cleaners(
            world.prop.id,
            SetPropertyCleanersRequest(cleaners=[
                {"cleaner_id": world.bob.id, "priority": 2},
                {"cleaner_id": world.carol.id, "priority": 1},
                {"cleaner_id": world.alice.id, "priority": 9, "is_primary": True},
            ]),
        )
        assert [link.cleaner.id for link in links] == [world.alice.id, world.carol.id, world.bob.id]

    @pytest.mark.asyncio
    async def test_foreign_cleaner_rejected(self, services, repo, world):
        other = await repo.create_landlord("Other")
        stranger = await repo.create_cleaner(other.id, "Zed", chat_id="chat-zed")
        with pytest.raises(ValidationError):
            await services.directory.set_property_cleaners(
                world.prop.id, SetPropertyCleanersRequest(cleaners=[{"cleaner_id": stranger.id}])
            )

    @pytest.mark.asyncio
    async def test_unknown_property(self, services):
        with pytest.raises(NotFoundError):
            await services.directory.set_property_cleaners("nope", SetPropertyCleanersRequest())

    def test_two_primaries_rejected(self):
        with pytest.raises(ValueError):
            SetPropertyCleanersRequest(cleaners=[
                {"cleaner_id": "a", "is_primary": True},
                {"cleaner_id": "b", "is_primary": True},
            ])

    def test_duplicates_rejected(self):
        with pytest.raises(ValueError):
            SetPropertyCleanersRequest(cleaners=[{"cleaner_id": "a"}, {"cleaner_id": "a"}])
