"""Tests for the session registry state machine."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from config import SESSION_TTL
from session.models import SessionStatus
from session.registry import ErrorKind, SessionError, SessionRegistry

CODE = "ABCD1234"


@pytest.fixture
def registry(recorder, clock) -> SessionRegistry:
    return SessionRegistry(notify=recorder, clock=clock)


class TestCreateSession:
    """Tests for create_session."""

    @pytest.mark.asyncio
    async def test_creates_waiting_session(self, registry, recorder) -> None:
        """A new session is waiting, owned by its creator."""
        session = await registry.create_session(CODE, "sender")
        assert session.status == SessionStatus.WAITING
        assert session.sender_ref == "sender"
        assert session.receiver_ref is None
        assert recorder.to("sender") == [("session-created", {"sessionCode": CODE})]

    @pytest.mark.asyncio
    async def test_duplicate_code_is_rejected(self, registry) -> None:
        """A second create with the same code fails and leaves the original alone."""
        await registry.create_session(CODE, "sender")
        with pytest.raises(SessionError) as exc_info:
            await registry.create_session(CODE, "intruder")
        assert exc_info.value.kind == ErrorKind.CODE_EXISTS
        assert registry.get(CODE).sender_ref == "sender"

    @pytest.mark.asyncio
    async def test_uses_passed_in_store(self, recorder) -> None:
        """Sessions live in the store object handed to the registry."""
        store = {}
        registry = SessionRegistry(store=store, notify=recorder)
        await registry.create_session(CODE, "sender")
        assert CODE in store

    @pytest.mark.asyncio
    async def test_get_returns_a_copy(self, registry) -> None:
        """Callers cannot mutate registry state through get()."""
        await registry.create_session(CODE, "sender")
        copy = registry.get(CODE)
        copy.status = SessionStatus.CONNECTED
        assert registry.get(CODE).status == SessionStatus.WAITING


class TestJoinSession:
    """Tests for join_session."""

    @pytest.mark.asyncio
    async def test_join_marks_pending_and_notifies(self, registry, recorder) -> None:
        """Joining sets the receiver and asks the sender for approval."""
        await registry.create_session(CODE, "sender")
        session = await registry.join_session(CODE, "receiver")

        assert session.status == SessionStatus.PENDING
        assert session.receiver_ref == "receiver"
        assert ("connection-request", {"receiverId": "receiver", "sessionCode": CODE}) in (
            recorder.to("sender")
        )
        assert recorder.to("receiver") == [("waiting-for-approval", {"sessionCode": CODE})]

    @pytest.mark.asyncio
    async def test_unknown_code(self, registry) -> None:
        """Joining a code nobody created fails with NOT_FOUND."""
        with pytest.raises(SessionError) as exc_info:
            await registry.join_session(CODE, "receiver")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert exc_info.value.message == "Session not found"

    @pytest.mark.asyncio
    async def test_second_receiver_is_refused(self, registry) -> None:
        """A session has at most one receiver; the first one keeps its place."""
        await registry.create_session(CODE, "sender")
        await registry.join_session(CODE, "receiver")

        with pytest.raises(SessionError) as exc_info:
            await registry.join_session(CODE, "latecomer")
        assert exc_info.value.kind == ErrorKind.ALREADY_HAS_RECEIVER

        session = registry.get(CODE)
        assert session.receiver_ref == "receiver"
        assert session.status == SessionStatus.PENDING


class TestApproval:
    """Tests for accept_connection and reject_connection."""

    @pytest_asyncio.fixture
    async def pending(self, registry) -> SessionRegistry:
        await registry.create_session(CODE, "sender")
        await registry.join_session(CODE, "receiver")
        return registry

    @pytest.mark.asyncio
    async def test_accept_connects_both(self, pending, recorder) -> None:
        """Accepting marks the session connected and tells both sides."""
        session = await pending.accept_connection(CODE, "sender")
        assert session.status == SessionStatus.CONNECTED
        assert "connection-accepted" in recorder.events("sender")
        assert "connection-accepted" in recorder.events("receiver")

    @pytest.mark.asyncio
    async def test_only_sender_may_accept(self, pending) -> None:
        """The receiver cannot approve itself."""
        with pytest.raises(SessionError) as exc_info:
            await pending.accept_connection(CODE, "receiver")
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert pending.get(CODE).status == SessionStatus.PENDING

    @pytest.mark.asyncio
    async def test_accept_unknown_session_is_unauthorized(self, registry) -> None:
        """Accepting a missing session is refused the same way."""
        with pytest.raises(SessionError) as exc_info:
            await registry.accept_connection(CODE, "sender")
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_accept_without_receiver_is_refused(self, registry) -> None:
        """A session nobody has joined cannot be accepted or rejected."""
        await registry.create_session(CODE, "sender")
        for decide in (registry.accept_connection, registry.reject_connection):
            with pytest.raises(SessionError) as exc_info:
                await decide(CODE, "sender")
            assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert registry.get(CODE).status == SessionStatus.WAITING

    @pytest.mark.asyncio
    async def test_accept_twice_is_refused(self, pending) -> None:
        """Once connected, the approval step is over."""
        await pending.accept_connection(CODE, "sender")
        with pytest.raises(SessionError):
            await pending.accept_connection(CODE, "sender")
        assert pending.get(CODE).status == SessionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_reject_reopens_session(self, pending, recorder) -> None:
        """Rejecting clears the receiver so someone else can join."""
        session = await pending.reject_connection(CODE, "sender")
        assert session.status == SessionStatus.WAITING
        assert session.receiver_ref is None
        assert ("connection-rejected", {"sessionCode": CODE}) in recorder.to("receiver")

        rejoined = await pending.join_session(CODE, "another")
        assert rejoined.receiver_ref == "another"

    @pytest.mark.asyncio
    async def test_only_sender_may_reject(self, pending) -> None:
        """Nobody but the sender can reject."""
        with pytest.raises(SessionError) as exc_info:
            await pending.reject_connection(CODE, "receiver")
        assert exc_info.value.kind == ErrorKind.UNAUTHORIZED
        assert pending.get(CODE).receiver_ref == "receiver"


class TestRelay:
    """Tests for negotiation relaying."""

    @pytest_asyncio.fixture
    async def connected(self, registry) -> SessionRegistry:
        await registry.create_session(CODE, "sender")
        await registry.join_session(CODE, "receiver")
        await registry.accept_connection(CODE, "sender")
        return registry

    @pytest.mark.asyncio
    async def test_offer_goes_to_receiver(self, connected, recorder) -> None:
        """Offers travel from the sender to the receiver."""
        offer = {"type": "offer", "sdp": "v=0"}
        assert await connected.relay_offer(CODE, "sender", offer)
        assert recorder.to("receiver")[-1] == ("webrtc-offer", {"offer": offer})

    @pytest.mark.asyncio
    async def test_offer_from_receiver_is_dropped(self, connected, recorder) -> None:
        """Only the sender may send offers."""
        before = len(recorder.messages)
        assert not await connected.relay_offer(CODE, "receiver", {"type": "offer"})
        assert len(recorder.messages) == before

    @pytest.mark.asyncio
    async def test_answer_goes_to_sender(self, connected, recorder) -> None:
        """Answers travel from the receiver to the sender."""
        answer = {"type": "answer", "sdp": "v=0"}
        assert await connected.relay_answer(CODE, "receiver", answer)
        assert recorder.to("sender")[-1] == ("webrtc-answer", {"answer": answer})

    @pytest.mark.asyncio
    async def test_candidates_go_to_the_other_side(self, connected, recorder) -> None:
        """ICE candidates are relayed to whoever did not send them."""
        candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}
        await connected.relay_ice_candidate(CODE, "sender", candidate)
        await connected.relay_ice_candidate(CODE, "receiver", candidate)
        assert recorder.to("receiver")[-1] == ("webrtc-ice-candidate", {"candidate": candidate})
        assert recorder.to("sender")[-1] == ("webrtc-ice-candidate", {"candidate": candidate})

    @pytest.mark.asyncio
    async def test_relay_without_counterpart_is_a_no_op(self, registry, recorder) -> None:
        """Nothing is relayed when there is no receiver or no session."""
        await registry.create_session(CODE, "sender")
        before = len(recorder.messages)
        assert not await registry.relay_ice_candidate(CODE, "sender", {})
        assert not await registry.relay_offer("ZZZZ9999", "sender", {})
        assert len(recorder.messages) == before

    @pytest.mark.asyncio
    async def test_stranger_cannot_relay(self, connected, recorder) -> None:
        """A connection outside the session cannot inject candidates."""
        before = len(recorder.messages)
        assert not await connected.relay_ice_candidate(CODE, "stranger", {})
        assert len(recorder.messages) == before


class TestTeardown:
    """Tests for transfer completion, ending and disconnection."""

    @pytest_asyncio.fixture
    async def connected(self, registry) -> SessionRegistry:
        await registry.create_session(CODE, "sender")
        await registry.join_session(CODE, "receiver")
        await registry.accept_connection(CODE, "sender")
        return registry

    @pytest.mark.asyncio
    async def test_transfer_complete_broadcasts_and_destroys(self, connected, recorder) -> None:
        """Both members hear about completion and the session is gone."""
        assert await connected.notify_transfer_complete(CODE, {"sessionCode": CODE})
        assert "transfer-complete" in recorder.events("sender")
        assert "transfer-complete" in recorder.events("receiver")
        assert connected.get(CODE) is None

    @pytest.mark.asyncio
    async def test_transfer_complete_unknown_code(self, registry) -> None:
        """Completing an unknown session does nothing."""
        assert not await registry.notify_transfer_complete(CODE)

    @pytest.mark.asyncio
    async def test_disconnect_notifies_other_side_once(self, connected, recorder) -> None:
        """The surviving peer sees exactly one peer-disconnected notice."""
        removed = await connected.disconnect("receiver")
        assert removed == [CODE]
        assert recorder.events("sender").count("peer-disconnected") == 1
        assert connected.get(CODE) is None

        with pytest.raises(SessionError) as exc_info:
            await connected.join_session(CODE, "newcomer")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_disconnect_of_lonely_sender(self, registry, recorder) -> None:
        """A waiting session is destroyed silently when its sender leaves."""
        await registry.create_session(CODE, "sender")
        await registry.disconnect("sender")
        assert registry.get(CODE) is None
        assert recorder.events("sender") == ["session-created"]

    @pytest.mark.asyncio
    async def test_disconnect_cleans_every_session(self, registry) -> None:
        """All sessions of the departing connection are removed."""
        await registry.create_session(CODE, "sender")
        await registry.create_session("WXYZ0000", "sender")
        await registry.create_session("KEEP0000", "someone-else")
        await registry.disconnect("sender")
        assert len(registry) == 1
        assert "KEEP0000" in registry

    @pytest.mark.asyncio
    async def test_end_session(self, connected, recorder) -> None:
        """Ending tells the other participant and destroys the session."""
        assert await connected.end_session(CODE, "receiver")
        assert ("session-ended", {"sessionCode": CODE}) in recorder.to("sender")
        assert connected.get(CODE) is None

    @pytest.mark.asyncio
    async def test_end_session_by_stranger(self, connected) -> None:
        """Only participants can end a session."""
        assert not await connected.end_session(CODE, "stranger")
        assert connected.get(CODE) is not None


class TestExpiry:
    """Tests for the expiry sweep."""

    @pytest.mark.asyncio
    async def test_untouched_session_expires(self, registry, clock) -> None:
        """A session is gone after TTL plus a moment, whatever its status."""
        await registry.create_session(CODE, "sender")
        clock.advance(SESSION_TTL + 0.001)
        assert await registry.sweep_expired() == [CODE]
        assert registry.get(CODE) is None

    @pytest.mark.asyncio
    async def test_young_session_survives(self, registry, clock) -> None:
        """Sessions younger than the TTL are kept."""
        await registry.create_session(CODE, "sender")
        clock.advance(SESSION_TTL - 1)
        assert await registry.sweep_expired() == []
        assert registry.get(CODE) is not None

    @pytest.mark.asyncio
    async def test_connected_session_expires_too(self, registry, clock) -> None:
        """Age is absolute: a connected session is swept as well."""
        await registry.create_session(CODE, "sender")
        await registry.join_session(CODE, "receiver")
        await registry.accept_connection(CODE, "sender")
        clock.advance(SESSION_TTL + 1)
        assert await registry.sweep_expired() == [CODE]

    @pytest.mark.asyncio
    async def test_background_sweeper(self, recorder, clock) -> None:
        """start() runs the sweep periodically until stop()."""
        registry = SessionRegistry(notify=recorder, clock=clock)
        await registry.create_session(CODE, "sender")
        clock.advance(SESSION_TTL + 1)

        registry.start(interval=0.01)
        for _ in range(100):
            if CODE not in registry:
                break
            await asyncio.sleep(0.01)
        await registry.stop()
        assert CODE not in registry


class TestSerialization:
    """Tests for per-code serialization."""

    @pytest.mark.asyncio
    async def test_racing_joins_admit_one_receiver(self, registry) -> None:
        """Concurrent joins on one code leave exactly one receiver."""
        await registry.create_session(CODE, "sender")
        results = await asyncio.gather(
            *(registry.join_session(CODE, f"r{i}") for i in range(5)),
            return_exceptions=True,
        )
        admitted = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, SessionError)]
        assert len(admitted) == 1
        assert len(refused) == 4
        assert all(r.kind == ErrorKind.ALREADY_HAS_RECEIVER for r in refused)

    @pytest.mark.asyncio
    async def test_disconnect_racing_join(self, registry) -> None:
        """A join racing the sender's disconnect never revives the session."""
        await registry.create_session(CODE, "sender")
        results = await asyncio.gather(
            registry.disconnect("sender"),
            registry.join_session(CODE, "receiver"),
            return_exceptions=True,
        )
        assert registry.get(CODE) is None
        assert results[0] == [CODE]

    @pytest.mark.asyncio
    async def test_unknown_codes_leave_no_locks(self, registry) -> None:
        """Operations on codes without a session do not accumulate locks."""
        for i in range(20):
            code = f"ZZZZ{i:04d}"
            with pytest.raises(SessionError):
                await registry.join_session(code, "prober")
            await registry.relay_offer(code, "prober", {"sdp": "x"})
        assert registry._locks == {}

    @pytest.mark.asyncio
    async def test_lock_is_dropped_with_its_session(self, registry) -> None:
        """Destroying a session forgets its lock."""
        await registry.create_session(CODE, "sender")
        assert CODE in registry._locks
        await registry.end_session(CODE, "sender")
        assert registry._locks == {}


class TestCodeValidation:
    """Tests for malformed session codes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["abcd1234", "SHORT", "ABCD-234", ""])
    async def test_malformed_codes_are_refused(self, registry, code) -> None:
        """Codes that are not 8 uppercase alphanumerics never reach the store."""
        for operation in (registry.create_session, registry.join_session):
            with pytest.raises(SessionError) as exc_info:
                await operation(code, "caller")
            assert exc_info.value.kind == ErrorKind.INVALID_CODE
        assert len(registry) == 0
        assert registry._locks == {}
