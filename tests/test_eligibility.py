# tests/test_eligibility.py
"""Tests for candidate selection: property ranking, then landlord fallback"""
import pytest

from app.core.dispatch.domain import Cleaner, PropertyCleanerLink
from app.core.dispatch.eligibility import EligibilityResolver, pick_from_links, rank_property_links


def _link(cid: str, priority: int = 0, primary: bool = False, **cleaner_kwargs) -> PropertyCleanerLink:
    cleaner_kwargs.setdefault("chat_id", f"chat-{cid}")
    cleaner = Cleaner(id=cid, landlord_id="l1", name=cid.title(), **cleaner_kwargs)
    return PropertyCleanerLink(property_id="p1", cleaner=cleaner, priority=priority, is_primary=primary)


class TestRanking:
    def test_primary_first_then_priority(self):
        links = [_link("b", priority=2), _link("c", priority=1), _link("a", priority=9, primary=True)]
        assert [link.cleaner.id for link in rank_property_links(links)] == ["a", "c", "b"]

    def test_equal_priority_keeps_order(self):
        links = [_link("x", priority=1), _link("y", priority=1)]
        assert [link.cleaner.id for link in rank_property_links(links)] == ["x", "y"]

    def test_skips_tried_inactive_and_unlinked(self):
        links = [
            _link("a", priority=0, primary=True),
            _link("b", priority=1, active=False),
            _link("c", priority=2, chat_id=None),
            _link("d", priority=3),
        ]
        assert pick_from_links(links, {"a"}).id == "d"

    def test_none_when_all_tried(self):
        assert pick_from_links([_link("a")], {"a"}) is None


class TestEligibilityResolver:
    @pytest.mark.asyncio
    async def test_property_tier_first(self, repo, world, job):
        resolver = EligibilityResolver(repo)
        cleaner = await resolver.next_candidate(job, set())
        assert cleaner.id == world.alice.id

    @pytest.mark.asyncio
    async def test_walks_property_ranking(self, repo, world, job):
        resolver = EligibilityResolver(repo)
        cleaner = await resolver.next_candidate(job, {world.alice.id})
        assert cleaner.id == world.bob.id

    @pytest.mark.asyncio
    async def test_falls_back_to_landlord_cleaners(self, repo, world, job):
        resolver = EligibilityResolver(repo)
        cleaner = await resolver.next_candidate(job, {world.alice.id, world.bob.id})
        assert cleaner.id == world.carol.id

    @pytest.mark.asyncio
    async def test_fallback_alphabetical_and_excludes_unlinked(self, repo, world, job):
        await repo.create_cleaner(world.landlord.id, "Aaron")  # no chat, never eligible
        await repo.create_cleaner(world.landlord.id, "Beth", chat_id="chat-beth")
        resolver = EligibilityResolver(repo)
        cleaner = await resolver.next_candidate(job, {world.alice.id, world.bob.id})
        assert cleaner.name == "Beth"

    @pytest.mark.asyncio
    async def test_other_landlords_cleaners_never_picked(self, repo, world, job):
        other = await repo.create_landlord("Other")
        await repo.create_cleaner(other.id, "Zed", chat_id="chat-zed")
        resolver = EligibilityResolver(repo)
        tried = {world.alice.id, world.bob.id, world.carol.id}
        assert await resolver.next_candidate(job, tried) is None
