"""Unit tests for LawsuitManager: creation, court rooms, verdicts and clearing."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import (
    ACCUSED_ID,
    BYSTANDER_ID,
    CATEGORY_ID,
    GUILD_ID,
    JUDGE_ID,
    PLAINTIFF_ID,
    ROOM_ID,
)
from courthouse import (
    Actor,
    Config,
    ForbiddenError,
    GuildState,
    InvalidTargetError,
    LawsuitManager,
    LawsuitStatus,
    NoActiveLawsuitError,
    PlatformUnavailableError,
    Repo,
    UnconfiguredError,
)

JUDGE = Actor(id=JUDGE_ID)


async def file_lawsuit(lawsuits: LawsuitManager, moderator: Actor, **kwargs):
    return await lawsuits.create(
        GUILD_ID,
        moderator,
        plaintiff_id=PLAINTIFF_ID,
        accused_id=ACCUSED_ID,
        judge_id=JUDGE_ID,
        reason=kwargs.pop("reason", "noise"),
        **kwargs,
    )


@pytest.fixture
async def configured(repo: Repo) -> Repo:
    await repo.set_court_category(GUILD_ID, CATEGORY_ID)
    return repo


class TestCreate:
    @pytest.mark.asyncio
    async def test_requires_court_category(
        self, lawsuits: LawsuitManager, moderator: Actor, mock_gateway: AsyncMock
    ) -> None:
        with pytest.raises(UnconfiguredError):
            await file_lawsuit(lawsuits, moderator)

        mock_gateway.create_restricted_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_succeeds_after_category_is_set(
        self, lawsuits: LawsuitManager, moderator: Actor, repo: Repo
    ) -> None:
        await lawsuits.set_court_category(GUILD_ID, moderator, CATEGORY_ID)

        lawsuit = await file_lawsuit(lawsuits, moderator)

        assert lawsuit.verdict is None
        assert lawsuit.status is LawsuitStatus.ACTIVE
        assert lawsuit.court_room_id == ROOM_ID
        state = await repo.find_or_insert_state(GUILD_ID)
        assert state.lawsuits == [lawsuit]
        assert [r.channel_id for r in state.court_rooms] == [ROOM_ID]

    @pytest.mark.asyncio
    async def test_room_is_restricted_to_the_parties(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        await file_lawsuit(lawsuits, moderator, plaintiff_lawyer_id=BYSTANDER_ID)

        call = mock_gateway.create_restricted_room.call_args
        assert call.args == (GUILD_ID, CATEGORY_ID)
        assert call.kwargs["allowed_member_ids"] == {
            PLAINTIFF_ID,
            ACCUSED_ID,
            JUDGE_ID,
            BYSTANDER_ID,
        }

    @pytest.mark.asyncio
    async def test_posts_summary_into_the_room(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        mock_gateway.send_embed.assert_awaited_once()
        assert mock_gateway.send_embed.call_args.args[0] == ROOM_ID

    @pytest.mark.asyncio
    async def test_failed_summary_does_not_fail_creation(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        mock_gateway.send_embed.side_effect = PlatformUnavailableError()

        lawsuit = await file_lawsuit(lawsuits, moderator)

        assert lawsuit.court_room_id == ROOM_ID

    @pytest.mark.asyncio
    async def test_room_failure_persists_nothing(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        mock_gateway.create_restricted_room.side_effect = PlatformUnavailableError()

        with pytest.raises(PlatformUnavailableError):
            await file_lawsuit(lawsuits, moderator)

        state = await configured.find_or_insert_state(GUILD_ID)
        assert state.lawsuits == []
        assert state.court_rooms == []

    @pytest.mark.asyncio
    async def test_requires_manage_guild(
        self, lawsuits: LawsuitManager, member: Actor, configured: Repo
    ) -> None:
        with pytest.raises(ForbiddenError):
            await file_lawsuit(lawsuits, member)

    @pytest.mark.asyncio
    async def test_blank_reason_is_rejected(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        with pytest.raises(InvalidTargetError):
            await file_lawsuit(lawsuits, moderator, reason="   \n ")

        mock_gateway.create_restricted_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_reason_is_sanitized(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        lawsuit = await file_lawsuit(lawsuits, moderator, reason="  too\n\nmuch   noise ")

        assert lawsuit.reason == "too much noise"


class TestSetCourtCategory:
    @pytest.mark.asyncio
    async def test_stores_resolved_category(
        self, lawsuits: LawsuitManager, moderator: Actor, repo: Repo
    ) -> None:
        assert await lawsuits.set_court_category(GUILD_ID, moderator, 55) == CATEGORY_ID

        assert (await repo.find_or_insert_state(GUILD_ID)).court_category_id == CATEGORY_ID

    @pytest.mark.asyncio
    async def test_rejects_non_category(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        repo: Repo,
    ) -> None:
        mock_gateway.resolve_category.side_effect = InvalidTargetError("That is not a category.")

        with pytest.raises(InvalidTargetError, match="not a category"):
            await lawsuits.set_court_category(GUILD_ID, moderator, 55)

        assert (await repo.find_or_insert_state(GUILD_ID)).court_category_id is None

    @pytest.mark.asyncio
    async def test_requires_manage_guild(
        self, lawsuits: LawsuitManager, member: Actor, mock_gateway: AsyncMock
    ) -> None:
        with pytest.raises(ForbiddenError):
            await lawsuits.set_court_category(GUILD_ID, member, 55)

        mock_gateway.resolve_category.assert_not_called()


class TestClose:
    @pytest.mark.asyncio
    async def test_judge_closes_lawsuit(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        closed = await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        assert closed.verdict == "guilty"
        assert closed.status is LawsuitStatus.CLOSED
        state = await configured.find_or_insert_state(GUILD_ID)
        assert state.lawsuits[0].verdict == "guilty"

    @pytest.mark.asyncio
    async def test_non_judge_is_forbidden(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        with pytest.raises(ForbiddenError):
            await lawsuits.close(GUILD_ID, Actor(id=PLAINTIFF_ID), ROOM_ID, "guilty", False)

        assert (await configured.find_or_insert_state(GUILD_ID)).active_lawsuit(ROOM_ID)

    @pytest.mark.asyncio
    async def test_override_bypasses_judge_check(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        closed = await lawsuits.close(GUILD_ID, moderator, ROOM_ID, "dismissed", True)

        assert closed.verdict == "dismissed"

    @pytest.mark.asyncio
    async def test_closed_room_has_no_active_lawsuit(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)
        await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        with pytest.raises(NoActiveLawsuitError):
            await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

    @pytest.mark.asyncio
    async def test_unknown_room_has_no_active_lawsuit(
        self, lawsuits: LawsuitManager, moderator: Actor
    ) -> None:
        with pytest.raises(NoActiveLawsuitError):
            await lawsuits.close(GUILD_ID, moderator, ROOM_ID, "guilty", True)

    @pytest.mark.asyncio
    async def test_lawsuit_outside_recorded_court_room_is_not_closed(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        def forget_rooms(state: GuildState) -> None:
            state.court_rooms.clear()

        await configured.modify_state(GUILD_ID, forget_rooms)

        with pytest.raises(NoActiveLawsuitError, match="not a court room"):
            await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        assert (await configured.find_or_insert_state(GUILD_ID)).active_lawsuit(ROOM_ID)

    @pytest.mark.asyncio
    async def test_concurrent_closes_have_one_winner(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        results = await asyncio.gather(
            lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False),
            lawsuits.close(GUILD_ID, moderator, ROOM_ID, "innocent", True),
            return_exceptions=True,
        )

        assert sum(isinstance(r, NoActiveLawsuitError) for r in results) == 1
        state = await configured.find_or_insert_state(GUILD_ID)
        assert state.lawsuits[0].verdict in {"guilty", "innocent"}

    @pytest.mark.asyncio
    async def test_room_is_locked_for_everyone_but_the_judge(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        mock_gateway.lock_room.assert_awaited_once_with(ROOM_ID, {PLAINTIFF_ID, ACCUSED_ID})

    @pytest.mark.asyncio
    async def test_lock_failure_keeps_verdict(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
    ) -> None:
        await file_lawsuit(lawsuits, moderator)
        mock_gateway.lock_room.side_effect = PlatformUnavailableError()

        with pytest.raises(PlatformUnavailableError, match="verdict was recorded"):
            await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        state = await configured.find_or_insert_state(GUILD_ID)
        assert state.lawsuits[0].verdict == "guilty"

    @pytest.mark.asyncio
    async def test_room_lock_can_be_disabled(
        self,
        lawsuits: LawsuitManager,
        moderator: Actor,
        mock_gateway: AsyncMock,
        configured: Repo,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(Config, "LOCK_ROOM_ON_VERDICT", False)
        await file_lawsuit(lawsuits, moderator)

        await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        mock_gateway.lock_room.assert_not_called()

    @pytest.mark.asyncio
    async def test_room_can_host_a_new_lawsuit_after_verdict(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)
        await lawsuits.close(GUILD_ID, JUDGE, ROOM_ID, "guilty", False)

        second = await file_lawsuit(lawsuits, moderator)

        state = await configured.find_or_insert_state(GUILD_ID)
        assert state.active_lawsuit(ROOM_ID).id == second.id
        assert len(state.court_rooms) == 1


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_is_total(
        self, lawsuits: LawsuitManager, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)
        await configured.set_confinement_role(GUILD_ID, 99)
        await configured.add_confinement_entry(GUILD_ID, ACCUSED_ID)

        await lawsuits.clear(GUILD_ID, moderator)

        assert await configured.find_or_insert_state(GUILD_ID) == GuildState(guild_id=GUILD_ID)

    @pytest.mark.asyncio
    async def test_requires_manage_guild(
        self, lawsuits: LawsuitManager, member: Actor, moderator: Actor, configured: Repo
    ) -> None:
        await file_lawsuit(lawsuits, moderator)

        with pytest.raises(ForbiddenError):
            await lawsuits.clear(GUILD_ID, member)

        assert (await configured.find_or_insert_state(GUILD_ID)).lawsuits
