"""Tests for edit modes and the permission gate."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import FakeBackend, make_permission

from agent_session_store.agents import AgentRegistry
from agent_session_store.errors import PermissionConflict, TransientFetchError
from agent_session_store.events import PERMISSION_QUEUED, PermissionQueuedEvent
from agent_session_store.models import AgentDefinition
from agent_session_store.permissions import (
    EditModeStore,
    PermissionGate,
    calculate_edit_permission_ui_state,
    get_agent_default_edit_permission,
    is_edit_permission_type,
)


@pytest.fixture
def edit_modes(agents: AgentRegistry) -> EditModeStore:
    return EditModeStore(agents)


@pytest.fixture
def gate(backend: FakeBackend, edit_modes: EditModeStore) -> PermissionGate:
    return PermissionGate(backend, edit_modes, resolve_agent=lambda _sid: "build")


# ---------------------------------------------------------------------------
# Agent defaults
# ---------------------------------------------------------------------------


class TestAgentDefaults:
    def test_declared_permission(self, agents: AgentRegistry) -> None:
        assert get_agent_default_edit_permission(agents, "build") == "ask"

    def test_disabled_edit_tool_denies(self, agents: AgentRegistry) -> None:
        assert get_agent_default_edit_permission(agents, "plan") == "deny"

    def test_enabled_edit_tool_asks(self) -> None:
        agents = AgentRegistry()
        agents.register(AgentDefinition(name="coder", tools={"edit": True}))
        assert get_agent_default_edit_permission(agents, "coder") == "ask"

    def test_unknown_agent_asks(self, agents: AgentRegistry) -> None:
        assert get_agent_default_edit_permission(agents, "ghost") == "ask"
        assert get_agent_default_edit_permission(None, None) == "ask"

    def test_edit_type_names(self) -> None:
        assert is_edit_permission_type("Edit")
        assert is_edit_permission_type("str_replace_based_edit_tool")
        assert not is_edit_permission_type("bash")
        assert not is_edit_permission_type(None)


# ---------------------------------------------------------------------------
# Edit mode overrides
# ---------------------------------------------------------------------------


class TestEditModeStore:
    def test_escalation_cycle(self, edit_modes: EditModeStore) -> None:
        seen = [edit_modes.toggle_session_agent_edit_mode("s1", "build") for _ in range(4)]

        assert seen == ["allow", "full", "ask", "allow"]

    def test_deny_default_disables_toggle(self, edit_modes: EditModeStore) -> None:
        assert edit_modes.toggle_session_agent_edit_mode("s1", "plan") is None
        assert edit_modes.get_session_agent_edit_mode("s1", "plan") == "deny"
        assert edit_modes.overrides() == {}

    def test_setting_deny_is_noop(self, edit_modes: EditModeStore) -> None:
        assert not edit_modes.set_session_agent_edit_mode("s1", "build", "deny")
        assert edit_modes.get_session_agent_edit_mode("s1", "build") == "ask"

    def test_setting_default_clears_override(self, edit_modes: EditModeStore) -> None:
        edit_modes.set_session_agent_edit_mode("s1", "build", "full")
        assert edit_modes.overrides() == {"s1": {"build": "full"}}

        assert edit_modes.set_session_agent_edit_mode("s1", "build", "ask")
        assert edit_modes.overrides() == {}

    def test_overrides_are_per_session(self, edit_modes: EditModeStore) -> None:
        edit_modes.set_session_agent_edit_mode("s1", "build", "allow")

        assert edit_modes.get_session_agent_edit_mode("s1", "build") == "allow"
        assert edit_modes.get_session_agent_edit_mode("s2", "build") == "ask"

    def test_entries_roundtrip_drops_invalid(self, edit_modes: EditModeStore) -> None:
        loaded = edit_modes.load_entries(
            [
                ["s1", [["build", "full"], ["plan", "deny"], ["x"]]],
                ["s2", "bogus"],
                "garbage",
            ]
        )

        assert loaded == 1
        assert edit_modes.to_entries() == [["s1", [["build", "full"]]]]


# ---------------------------------------------------------------------------
# UI state
# ---------------------------------------------------------------------------


class TestEditPermissionUIState:
    def test_allow_everything_cascades_to_full(self) -> None:
        state = calculate_edit_permission_ui_state("allow", "allow", "allow")
        assert state.cascade_default_mode == "full"

    def test_bash_ask_cascades_to_allow(self) -> None:
        state = calculate_edit_permission_ui_state("allow", "ask", {"git *": "ask", "*": "allow"})

        assert state.cascade_default_mode == "allow"
        assert state.mode_availability["allow"]
        assert state.bash_has_ask
        assert not state.bash_all_allow

    def test_ask_default(self) -> None:
        state = calculate_edit_permission_ui_state("ask")

        assert state.cascade_default_mode == "ask"
        assert state.mode_availability["ask"]
        assert state.auto_approve_available

    def test_deny_default_offers_nothing(self) -> None:
        state = calculate_edit_permission_ui_state("deny", "deny", "ask")

        assert not state.mode_availability["full"]
        assert not state.auto_approve_available


# ---------------------------------------------------------------------------
# Permission gate
# ---------------------------------------------------------------------------


class TestPermissionGate:
    @pytest.mark.asyncio
    async def test_ask_mode_queues(self, gate: PermissionGate, backend: FakeBackend) -> None:
        queued: list[PermissionQueuedEvent] = []
        gate.events.on(PERMISSION_QUEUED, queued.append)

        result = await gate.add_permission(make_permission())

        assert result.action == "queued"
        assert [p.id for p in gate.pending("ses_1")] == ["perm_1"]
        assert backend.permission_responses == []
        assert queued[0].permission_id == "perm_1"

    @pytest.mark.asyncio
    async def test_allow_mode_auto_approves_edits(
        self, gate: PermissionGate, edit_modes: EditModeStore, backend: FakeBackend
    ) -> None:
        edit_modes.set_session_agent_edit_mode("ses_1", "build", "allow")

        result = await gate.add_permission(make_permission(type="edit"))

        assert result.action == "auto_approved"
        assert backend.permission_responses == [("ses_1", "perm_1", "once")]
        assert gate.pending("ses_1") == []

    @pytest.mark.asyncio
    async def test_allow_mode_queues_other_types(
        self, gate: PermissionGate, edit_modes: EditModeStore
    ) -> None:
        edit_modes.set_session_agent_edit_mode("ses_1", "build", "allow")

        result = await gate.add_permission(make_permission(type="bash"))

        assert result.action == "queued"

    @pytest.mark.asyncio
    async def test_full_mode_approves_everything(
        self, gate: PermissionGate, edit_modes: EditModeStore, backend: FakeBackend
    ) -> None:
        edit_modes.set_session_agent_edit_mode("ses_1", "build", "full")

        result = await gate.add_permission(make_permission(type="webfetch"))

        assert result.action == "auto_approved"
        assert len(backend.permission_responses) == 1

    @pytest.mark.asyncio
    async def test_failed_auto_approval_is_queued(
        self, gate: PermissionGate, edit_modes: EditModeStore, backend: FakeBackend
    ) -> None:
        edit_modes.set_session_agent_edit_mode("ses_1", "build", "full")
        backend.respond_ok = False

        result = await gate.add_permission(make_permission())

        assert not result.success
        assert result.action == "queued"
        assert isinstance(result.error, TransientFetchError)
        assert gate.is_pending("ses_1", "perm_1")

    @pytest.mark.asyncio
    async def test_duplicate_requests_queued_once(self, gate: PermissionGate) -> None:
        await gate.add_permission(make_permission())
        await gate.add_permission(make_permission())

        assert len(gate.pending("ses_1")) == 1

    @pytest.mark.asyncio
    async def test_request_without_session_ignored(self, gate: PermissionGate) -> None:
        result = await gate.add_permission(make_permission(session_id=""))

        assert result.action == "ignored"
        assert gate.all_pending() == {}

    @pytest.mark.asyncio
    async def test_respond_removes_request(
        self, gate: PermissionGate, backend: FakeBackend
    ) -> None:
        await gate.add_permission(make_permission())

        result = await gate.respond_to_permission("ses_1", "perm_1", "always")

        assert result.success
        assert result.action == "responded"
        assert backend.permission_responses == [("ses_1", "perm_1", "always")]
        assert gate.pending("ses_1") == []

    @pytest.mark.asyncio
    async def test_respond_to_unknown_is_ignored(self, gate: PermissionGate) -> None:
        result = await gate.respond_to_permission("ses_1", "nope", "once")

        assert not result.success
        assert result.action == "ignored"
        assert isinstance(result.error, PermissionConflict)

    @pytest.mark.asyncio
    async def test_failed_response_stays_pending(
        self, gate: PermissionGate, backend: FakeBackend
    ) -> None:
        await gate.add_permission(make_permission())
        backend.respond_ok = False

        result = await gate.respond_to_permission("ses_1", "perm_1", "once")

        assert not result.success
        assert gate.is_pending("ses_1", "perm_1")

    @pytest.mark.asyncio
    async def test_reject_triggers_abort(
        self, backend: FakeBackend, edit_modes: EditModeStore
    ) -> None:
        on_reject = AsyncMock()
        gate = PermissionGate(
            backend, edit_modes, resolve_agent=lambda _sid: "build", on_reject=on_reject
        )
        await gate.add_permission(make_permission())

        await gate.respond_to_permission("ses_1", "perm_1", "reject")

        on_reject.assert_awaited_once_with("ses_1")
        assert gate.pending("ses_1") == []

    @pytest.mark.asyncio
    async def test_abort_failure_does_not_block_reject(
        self, backend: FakeBackend, edit_modes: EditModeStore
    ) -> None:
        on_reject = AsyncMock(side_effect=RuntimeError("boom"))
        gate = PermissionGate(
            backend, edit_modes, resolve_agent=lambda _sid: "build", on_reject=on_reject
        )
        await gate.add_permission(make_permission())

        result = await gate.respond_to_permission("ses_1", "perm_1", "reject")

        assert result.success

    @pytest.mark.asyncio
    async def test_directory_sent_with_response(
        self, backend: FakeBackend, edit_modes: EditModeStore
    ) -> None:
        backend.respond_to_permission = AsyncMock(return_value=True)  # type: ignore[method-assign]
        gate = PermissionGate(
            backend,
            edit_modes,
            resolve_agent=lambda _sid: "build",
            resolve_directory=lambda _sid: "/work/tree",
        )
        await gate.add_permission(make_permission())

        await gate.respond_to_permission("ses_1", "perm_1", "once")

        backend.respond_to_permission.assert_awaited_once_with(
            "ses_1", "perm_1", "once", directory="/work/tree"
        )

    def test_load_entries_drops_malformed(self, gate: PermissionGate) -> None:
        loaded = gate.load_entries(
            [
                ["ses_1", [make_permission().to_dict(), {"type": "edit"}, "junk"]],
                ["ses_2", []],
                ["bad"],
            ]
        )

        assert loaded == 1
        assert [p.id for p in gate.pending("ses_1")] == ["perm_1"]
        assert gate.to_entries()[0][0] == "ses_1"
