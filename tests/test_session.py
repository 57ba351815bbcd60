import pytest

from conclave.audit import AuditQuery, MemoryAuditSink, OutcomeStatus
from conclave.blackboard import FindingCategory
from conclave.consensus import QuorumRule, VoteChoice
from conclave.errors import SessionNotActive
from conclave.events import EventType
from conclave.messages import Message, MessageKind
from conclave.session import Coordinator, SessionStatus
from conclave.store import STREAM_START


@pytest.mark.asyncio
async def test_join_starts_and_enters_sessions(coordinator: Coordinator) -> None:
    lead = await coordinator.join("lead", context={"ticket": "OPS-12", "note": "password=hunter2"})
    helper = await coordinator.join("helper", lead.session_id)
    again = await coordinator.join("helper", lead.session_id)

    session = await coordinator.get_session(lead.session_id)
    assert session.status == SessionStatus.ACTIVE
    assert session.initiator == "lead"
    assert session.participants == ["lead", "helper"]
    assert "hunter2" not in session.context["note"]
    assert helper.session_id == again.session_id == lead.session_id

    joined = await coordinator.events.replay(lead.session_id, "session")
    assert [e.agent_id for e in joined] == ["lead", "helper", "helper"]
    assert {e.type for e in joined} == {EventType.SESSION_JOINED}


@pytest.mark.asyncio
async def test_unknown_session_cannot_be_joined(coordinator: Coordinator) -> None:
    with pytest.raises(SessionNotActive):
        await coordinator.join("w1", "no-such-session")


@pytest.mark.asyncio
async def test_sessions_past_their_ttl_are_aborted(coordinator: Coordinator, sink: MemoryAuditSink, clock) -> None:
    lead = await coordinator.join("lead")
    clock.advance(3601)

    with pytest.raises(SessionNotActive):
        await coordinator.join("late", lead.session_id)
    assert (await coordinator.get_session(lead.session_id)).status == SessionStatus.ABORTED
    assert sink.entries[-1].outcome == OutcomeStatus.DENIED


@pytest.mark.asyncio
async def test_leave_records_participation(coordinator: Coordinator, sink: MemoryAuditSink) -> None:
    handle = await coordinator.join("w1")
    await handle.put("plan", {"step": 1}, 0)
    await handle.put("plan", {"step": 1}, 0)
    await handle.post_finding(FindingCategory.OBSERVATION, "cpu pegged", 0.8)

    session = await handle.leave()

    assert session.status == SessionStatus.COMPLETED
    assert session.ended_at is not None
    entry = sink.entries[-1]
    assert entry.action.name == "session.leave"
    assert entry.detail["participation"] == {"writes": 1, "conflicts": 1, "findings": 1}

    with pytest.raises(SessionNotActive):
        await handle.post_finding(FindingCategory.OBSERVATION, "late", 0.5)
    with pytest.raises(SessionNotActive):
        await coordinator.join("w2", handle.session_id)


@pytest.mark.asyncio
async def test_leave_outcome_must_be_terminal(coordinator: Coordinator) -> None:
    handle = await coordinator.join("w1")
    with pytest.raises(ValueError):
        await handle.leave(SessionStatus.ACTIVE)
    assert (await handle.leave(SessionStatus.ABORTED)).status == SessionStatus.ABORTED


@pytest.mark.asyncio
async def test_every_call_is_attributed(coordinator: Coordinator, audit) -> None:
    handle = await coordinator.join("w1")
    await handle.put("k", 1, None)
    await handle.acquire("repo")
    task_id = await handle.create_task("scan")
    await handle.publish("chat", payload={"hi": True})
    await handle.get("k")
    await handle.snapshot(["k"])
    await handle.findings()
    [event] = await handle.replay("chat")
    await handle.ack("chat", event.cursor)
    stream = handle.subscribe("chat", STREAM_START)
    assert (await anext(stream)).id == event.id
    await stream.aclose()

    entries = [e async for e in audit.query(AuditQuery(session_id=handle.session_id))]
    names = {e.action.name for e in entries}
    assert {
        "session.join",
        "blackboard.put",
        "blackboard.get",
        "blackboard.snapshot",
        "blackboard.list_findings",
        "locks.acquire",
        "tasks.create",
        "events.publish",
        "events.replay",
        "events.ack",
        "events.subscribe",
        "events.unsubscribe",
    } <= names
    assert {e.agent_id for e in entries} == {"w1"}
    created = [e for e in entries if e.action.name == "tasks.create"]
    assert created[0].resources == (f"task:{task_id}",)


@pytest.mark.asyncio
async def test_findings_are_announced(coordinator: Coordinator) -> None:
    handle = await coordinator.join("w1")
    finding_id = await handle.post_finding(FindingCategory.HYPOTHESIS, "leak in cache", 0.6, ["heap dump"])

    [event] = await handle.replay("findings")
    assert event.type == EventType.FINDING_POSTED
    assert event.payload["finding_id"] == finding_id
    [finding] = await handle.findings()
    assert finding.evidence == ("heap dump",)


@pytest.mark.asyncio
async def test_proposal_roster_defaults_to_participants(coordinator: Coordinator) -> None:
    a = await coordinator.join("a")
    b = await coordinator.join("b", a.session_id)

    pid = await a.open_proposal("rollback?", QuorumRule.unanimous())
    assert (await coordinator.consensus.get(pid)).roster == ["a", "b"]

    await a.vote(pid, VoteChoice.YES, 0.9)
    await b.vote(pid, VoteChoice.YES, 0.7)
    decision = await b.resolve(pid)
    assert decision.outcome.value == "yes"
    assert a.stats["votes"] == b.stats["votes"] == 1


def _message(handle, kind: MessageKind, payload: dict) -> Message:
    return Message(kind=kind, session_id=handle.session_id, agent_id=handle.agent_id, payload=payload)


@pytest.mark.asyncio
async def test_dispatch_routes_messages(coordinator: Coordinator) -> None:
    handle = await coordinator.join("w1")

    finding = _message(
        handle,
        MessageKind.FINDING,
        {"category": "observation", "content": "5xx spike", "confidence": 0.7},
    )
    reply = await handle.dispatch(finding)
    assert reply.kind == MessageKind.RESPONSE
    assert reply.reply_to == finding.id
    assert reply.payload["ok"]
    assert reply.payload["result"]["finding_id"]

    created = await handle.dispatch(
        _message(handle, MessageKind.ACTION, {"operation": "tasks.create", "args": {"type": "scan"}})
    )
    task_id = created.payload["result"]["task_id"]
    claimed = await handle.dispatch(
        _message(handle, MessageKind.REQUEST, {"operation": "tasks.claim", "args": {"types": ["scan"]}})
    )
    assert claimed.payload["result"]["id"] == task_id
    assert claimed.payload["result"]["status"] == "assigned"

    put = await handle.dispatch(
        _message(handle, MessageKind.ACTION, {"operation": "blackboard.put", "args": {"key": "k", "value": 1, "expected_version": 0}})
    )
    assert put.payload["result"] == {"version": 1}
    conflict = await handle.dispatch(
        _message(handle, MessageKind.ACTION, {"operation": "blackboard.put", "args": {"key": "k", "value": 2, "expected_version": 0}})
    )
    assert conflict.payload["result"] == {"conflict": True, "current_version": 1}

    opened = await handle.dispatch(
        _message(handle, MessageKind.REQUEST, {"operation": "consensus.open_proposal", "args": {"description": "go?"}})
    )
    pid = opened.payload["result"]["proposal_id"]
    voted = await handle.dispatch(
        _message(handle, MessageKind.VOTE, {"proposal_id": pid, "choice": "yes", "confidence": 0.9})
    )
    assert voted.payload == {"ok": True, "result": {"recorded": True}}
    resolved = await handle.dispatch(
        _message(handle, MessageKind.REQUEST, {"operation": "consensus.resolve", "args": {"proposal_id": pid}})
    )
    assert resolved.payload["result"]["outcome"] == "yes"


@pytest.mark.asyncio
async def test_dispatch_reports_errors(coordinator: Coordinator) -> None:
    handle = await coordinator.join("w1")

    unknown = await handle.dispatch(_message(handle, MessageKind.ACTION, {"operation": "nope"}))
    assert unknown.payload["ok"] is False
    assert unknown.payload["error_type"] == "ValueError"

    release = await handle.dispatch(
        _message(handle, MessageKind.ACTION, {"operation": "locks.release", "args": {"resource_id": "free"}})
    )
    assert release.payload["error_type"] == "NotHolder"

    bad_args = await handle.dispatch(
        _message(handle, MessageKind.ACTION, {"operation": "locks.acquire", "args": {"bogus": 1}})
    )
    assert bad_args.payload["error_type"] == "TypeError"

    stray = Message(kind=MessageKind.ACTION, session_id="other", agent_id="w1", payload={"operation": "tasks.list"})
    assert (await handle.dispatch(stray)).payload["ok"] is False

    response = await handle.dispatch(_message(handle, MessageKind.RESPONSE, {}))
    assert response.payload["ok"] is False


def test_messages_round_trip_through_dicts() -> None:
    message = Message(kind=MessageKind.VOTE, session_id="s1", agent_id="w1", payload={"choice": "no"})
    assert Message.from_dict(message.to_dict()) == message
