"""
Coordination - Leader election and dead-peer removal by vote.

Every vote walks the same stages on every participant:

    INIT -> ECHO -> CAST -> TALLY -> COMPARE -> ACCEPTED

INIT announces the vote, ECHO agrees on who takes part (and collects
each participant's start time), CAST exchanges ballots, TALLY exchanges
each participant's count, COMPARE exchanges the result each participant
settled on, and ACCEPTED applies it. A node only moves past a stage once
every participant has answered it; stragglers are retried a bounded
number of times, then dropped if a majority answered, otherwise the vote
is abandoned and a deterministic tie-break decides.

Votes are carried over plain GET requests:

    /vote?uuid=...&sender=...&stage=2&type=0&subject=&ballot=kitchen.local
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid as uuid_lib
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..balancer.registry import NodeRegistry
from ..balancer.updates import NODE_ID_PATTERN
from ..config import CoordinationConfig
from ..errors import PeerUnreachable, ProtocolAbort, ReportValidationError

logger = logging.getLogger(__name__)


class VoteType(IntEnum):
    ELECT_LEADER = 0
    REMOVE_NODE = 1


class VoteStage(IntEnum):
    INIT = 0
    ECHO = 1
    CAST = 2
    TALLY = 3
    COMPARE = 4
    ACCEPTED = 5


class VoteMessage(BaseModel):
    """One stage message of a vote, as carried on the wire."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    uuid: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9\-]+$")
    sender: str = Field(..., min_length=1, pattern=NODE_ID_PATTERN)
    stage: VoteStage
    type: VoteType
    subject: str = Field(default="", pattern=r"^[A-Za-z0-9._~:\-]*$")
    participants: list[str] = Field(default_factory=list)
    started: Optional[float] = Field(default=None, allow_inf_nan=False)
    ballot: Optional[str] = None
    tally: Optional[str] = None
    result: Optional[str] = None
    error: bool = False

    @field_validator("stage", "type", mode="before")
    @classmethod
    def _coerce_int(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value)
        return value

    @field_validator("participants", mode="before")
    @classmethod
    def _split_participants(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "VoteMessage":
        """
        Parse raw query parameters.

        Raises:
            ReportValidationError: If a field is missing or malformed
        """
        try:
            return cls.model_validate(dict(params))
        except ValidationError as e:
            error = e.errors()[0]
            field_name = ".".join(str(part) for part in error["loc"]) or None
            raise ReportValidationError(f"{field_name}: {error['msg']}", field=field_name) from e

    def to_params(self) -> dict[str, str]:
        params = {
            "uuid": self.uuid,
            "sender": self.sender,
            "stage": str(int(self.stage)),
            "type": str(int(self.type)),
            "subject": self.subject,
        }
        if self.participants:
            params["participants"] = ",".join(sorted(self.participants))
        if self.started is not None:
            params["started"] = repr(self.started)
        if self.ballot is not None:
            params["ballot"] = self.ballot
        if self.tally is not None:
            params["tally"] = self.tally
        if self.result is not None:
            params["result"] = self.result
        if self.error:
            params["error"] = "1"
        return params


class PeerTransport(Protocol):
    """Protocol for delivering vote messages to a peer."""

    async def send_vote(self, peer_id: str, message: VoteMessage) -> bool:
        """Deliver a message. Returns False if the peer could not be reached."""
        ...


def seed_key(vote_id: str, node_id: str) -> str:
    """Ordering key shared by every participant of a vote."""
    return hashlib.sha256(f"{vote_id}:{node_id}".encode()).hexdigest()


@dataclass
class Vote:
    """This node's copy of one vote."""

    uuid: str
    type: VoteType
    subject: str
    originator: str
    participants: set[str] = field(default_factory=set)
    stage: VoteStage = VoteStage.INIT

    responded: dict[VoteStage, set[str]] = field(default_factory=lambda: defaultdict(set))
    errored: dict[VoteStage, set[str]] = field(default_factory=lambda: defaultdict(set))

    started: dict[str, float] = field(default_factory=dict)
    ballots: dict[str, str] = field(default_factory=dict)
    tallies: dict[str, str] = field(default_factory=dict)
    compares: dict[str, str] = field(default_factory=dict)

    retries: int = 0
    deadline: float = 0.0
    result: Optional[str] = None

    @property
    def key(self) -> tuple[VoteType, str]:
        return (self.type, self.subject)

    def missing(self, stage: Optional[VoteStage] = None) -> set[str]:
        """Participants that have not answered the given (or current) stage."""
        stage = self.stage if stage is None else stage
        return self.participants - self.responded[stage]

    def majority(self) -> int:
        return len(self.participants) // 2 + 1

    def seeded_order(self) -> list[str]:
        return sorted(self.participants, key=lambda node_id: seed_key(self.uuid, node_id))

    def to_dict(self) -> dict:
        return {
            "uuid": self.uuid,
            "type": self.type.name,
            "subject": self.subject,
            "originator": self.originator,
            "stage": self.stage.name,
            "participants": sorted(self.participants),
            "missing": sorted(self.missing()),
            "retries": self.retries,
        }


class CoordinationProtocol:
    """
    Runs votes for this node and tracks the current leader.

    Not thread-safe; the server serialises calls with its event lock.
    Outbound messages are sent as background tasks so a handler never
    waits on a peer.
    """

    def __init__(
        self,
        node_id: str,
        registry: NodeRegistry,
        transport: PeerTransport,
        config: Optional[CoordinationConfig] = None,
        clock: Callable[[], float] = time.time,
        started_at: Optional[float] = None,
    ):
        self.node_id = node_id
        self.registry = registry
        self.transport = transport
        self.config = config or CoordinationConfig()
        self.clock = clock
        self.started_at = started_at if started_at is not None else clock()

        self.leader_id: Optional[str] = None
        self.votes: dict[str, Vote] = {}
        self._finished: deque[str] = deque(maxlen=256)
        self._tasks: set[asyncio.Task] = set()

        # Callbacks
        self.on_leader_change: Optional[Callable[[Optional[str]], None]] = None
        self.on_node_removed: Optional[Callable[[str], None]] = None

    # ==================== Leadership ====================

    @property
    def is_leader(self) -> bool:
        return self.leader_id is not None and self.leader_id == self.node_id

    def set_leader(self, leader_id: Optional[str]) -> None:
        if leader_id == self.leader_id:
            return
        previous = self.leader_id
        self.leader_id = leader_id
        logger.info(f"Leader changed: {previous} -> {leader_id}")
        if self.on_leader_change:
            self.on_leader_change(leader_id)

    def adopt_leader(self, leader_id: Optional[str]) -> bool:
        """Take a peer's view of the leader if we have none."""
        if self.leader_id is None and leader_id:
            self.set_leader(leader_id)
            return True
        return False

    # ==================== Starting votes ====================

    def start_vote(self, vote_type: VoteType, subject: str = "") -> Vote:
        """
        Start a vote as originator.

        At most one vote per (type, subject) is kept in flight; starting a
        duplicate returns the existing one.
        """
        for vote in self.votes.values():
            if vote.key == (vote_type, subject):
                return vote

        vote = Vote(
            uuid=uuid_lib.uuid4().hex,
            type=vote_type,
            subject=subject,
            originator=self.node_id,
        )
        vote.participants = ({self.node_id} | set(self.registry.node_ids())) - {subject}
        vote.started[self.node_id] = self.started_at
        self.votes[vote.uuid] = vote

        logger.info(
            f"Starting {vote_type.name} vote {vote.uuid[:8]} "
            f"(subject={subject or '-'}, {len(vote.participants)} participants)"
        )

        vote.responded[VoteStage.INIT].add(self.node_id)
        self._broadcast(vote, VoteStage.INIT)
        # INIT doubles as the originator's echo
        self._enter(vote, VoteStage.ECHO, broadcast=False)
        self._advance(vote)
        return vote

    # ==================== Receiving ====================

    def handle_message(self, message: VoteMessage) -> None:
        """Fold one incoming stage message into the matching vote."""
        if message.uuid in self._finished or message.sender == self.node_id:
            return

        vote = self.votes.get(message.uuid)
        if vote is None:
            if message.stage == VoteStage.ACCEPTED:
                # Missed the whole exchange; take the result as given
                self._apply_result(message.type, message.subject, message.result)
                self._finished.append(message.uuid)
                return
            if message.subject == self.node_id:
                logger.debug(f"Ignoring vote {message.uuid[:8]} about this node")
                return
            vote = Vote(
                uuid=message.uuid,
                type=message.type,
                subject=message.subject,
                originator=message.sender,
            )
            vote.participants = ({self.node_id} | set(self.registry.node_ids())) - {message.subject}
            vote.started[self.node_id] = self.started_at
            self.votes[vote.uuid] = vote

        self._record(vote, message)
        if vote.uuid not in self.votes:
            return

        if vote.stage == VoteStage.INIT:
            self._enter(vote, VoteStage.ECHO)
        self._advance(vote)

    def _record(self, vote: Vote, message: VoteMessage) -> None:
        sender = message.sender
        if sender == vote.subject:
            return

        if message.stage == VoteStage.ACCEPTED:
            self._finish(vote, message.result, broadcast=False)
            return

        if vote.stage <= VoteStage.ECHO:
            joined = ({sender} | set(message.participants)) - vote.participants - {vote.subject}
            if joined:
                vote.participants |= joined
                if vote.stage == VoteStage.ECHO:
                    self._broadcast(vote, VoteStage.ECHO, targets=joined - {self.node_id})
        elif sender not in vote.participants:
            logger.debug(f"Vote {vote.uuid[:8]}: ignoring late joiner {sender}")
            return

        stage = message.stage
        if message.error:
            vote.errored[stage].add(sender)
            return

        if stage in (VoteStage.INIT, VoteStage.ECHO):
            if stage == VoteStage.INIT:
                vote.responded[VoteStage.INIT].add(sender)
            vote.responded[VoteStage.ECHO].add(sender)
            if message.started is not None:
                vote.started[sender] = message.started
        elif stage == VoteStage.CAST and message.ballot is not None:
            vote.ballots[sender] = message.ballot
            vote.responded[stage].add(sender)
        elif stage == VoteStage.TALLY and message.tally is not None:
            vote.tallies[sender] = message.tally
            vote.responded[stage].add(sender)
        elif stage == VoteStage.COMPARE and message.result is not None:
            vote.compares[sender] = message.result
            vote.responded[stage].add(sender)

    # ==================== Stage machine ====================

    def _advance(self, vote: Vote) -> None:
        while vote.uuid in self.votes:
            if vote.missing():
                return

            if vote.stage == VoteStage.ECHO:
                vote.ballots[self.node_id] = self._ballot(vote)
                self._enter(vote, VoteStage.CAST)
            elif vote.stage == VoteStage.CAST:
                vote.tallies[self.node_id] = self._tally(vote)
                self._enter(vote, VoteStage.TALLY)
            elif vote.stage == VoteStage.TALLY:
                agreed = self._majority_value(vote, vote.tallies)
                if agreed is None:
                    agreed = self._tie_break(vote, vote.tallies)
                vote.compares[self.node_id] = agreed
                self._enter(vote, VoteStage.COMPARE)
            elif vote.stage == VoteStage.COMPARE:
                result = self._majority_value(vote, vote.compares)
                if result is None:
                    result = self._tie_break(vote, vote.compares)
                self._finish(vote, result, broadcast=True)
            else:
                return

    def _enter(self, vote: Vote, stage: VoteStage, broadcast: bool = True) -> None:
        vote.stage = stage
        vote.responded[stage].add(self.node_id)
        vote.retries = 0
        vote.deadline = self.clock() + self.config.stage_timeout
        if broadcast:
            self._broadcast(vote, stage)

    def _ballot(self, vote: Vote) -> str:
        if vote.type == VoteType.ELECT_LEADER:
            # Longest uptime wins; ties go to the smallest id
            known = [p for p in vote.participants if p in vote.started]
            if not known:
                return min(vote.participants)
            return min(known, key=lambda p: (vote.started[p], p))

        node = self.registry.get(vote.subject)
        if node is None:
            return "1"
        silent_for = self.clock() - node.last_seen
        return "1" if silent_for > self.config.peer_timeout else "0"

    def _tally(self, vote: Vote) -> str:
        ballots = [b for p, b in vote.ballots.items() if p in vote.participants]

        if vote.type == VoteType.REMOVE_NODE:
            yes = sum(1 for b in ballots if b == "1")
            return "1" if yes > len(vote.participants) / 2 else "0"

        counts = Counter(ballots)
        top = max(counts.values())
        tied = [candidate for candidate, n in counts.items() if n == top]
        return min(tied, key=lambda candidate: seed_key(vote.uuid, candidate))

    def _majority_value(self, vote: Vote, values: dict[str, str]) -> Optional[str]:
        counts = Counter(v for p, v in values.items() if p in vote.participants)
        for value, n in counts.most_common():
            if n > len(vote.participants) / 2:
                return value
        return None

    def _tie_break(self, vote: Vote, values: dict[str, str]) -> Optional[str]:
        for participant in vote.seeded_order():
            if participant in values:
                return values[participant]
        return None

    def _fallback(self, vote: Vote) -> Optional[str]:
        result = self._tie_break(vote, vote.compares) or self._tie_break(vote, vote.tallies)
        if result is not None:
            return result
        if vote.type == VoteType.ELECT_LEADER:
            order = vote.seeded_order()
            return order[0] if order else self.node_id
        return self._ballot(vote)

    def _finish(self, vote: Vote, result: Optional[str], broadcast: bool) -> None:
        vote.result = result
        if broadcast:
            vote.stage = VoteStage.ACCEPTED
            self._broadcast(vote, VoteStage.ACCEPTED)

        self.votes.pop(vote.uuid, None)
        self._finished.append(vote.uuid)
        logger.info(f"{vote.type.name} vote {vote.uuid[:8]} accepted: {result}")
        self._apply_result(vote.type, vote.subject, result)

    def _apply_result(self, vote_type: VoteType, subject: str, result: Optional[str]) -> None:
        if vote_type == VoteType.ELECT_LEADER:
            if result:
                self.set_leader(result)
            return

        if result != "1" or not subject or subject == self.node_id:
            return
        if self.registry.remove(subject) is not None:
            logger.info(f"Evicted unresponsive plug {subject}")
            if self.on_node_removed:
                self.on_node_removed(subject)
        if self.leader_id == subject:
            self.set_leader(None)

    # ==================== Timers ====================

    def check_timeouts(self, now: Optional[float] = None) -> None:
        """Retry, shrink or abandon votes whose stage deadline has passed."""
        now = now if now is not None else self.clock()

        for vote in list(self.votes.values()):
            if now < vote.deadline:
                continue

            missing = vote.missing()
            if not missing:
                self._advance(vote)
                continue

            if vote.retries < self.config.max_retries:
                vote.retries += 1
                vote.deadline = now + self.config.stage_timeout
                logger.debug(
                    f"Vote {vote.uuid[:8]} {vote.stage.name}: retry {vote.retries} "
                    f"for {sorted(missing)}"
                )
                self._broadcast(vote, vote.stage, targets=missing)
                continue

            answered = len(vote.participants) - len(missing)
            if answered >= vote.majority():
                logger.warning(
                    f"Vote {vote.uuid[:8]} {vote.stage.name}: proceeding without {sorted(missing)}"
                )
                vote.participants -= missing
                self._advance(vote)
                continue

            abort = ProtocolAbort(vote.uuid, int(vote.stage), missing)
            logger.warning(f"{abort}; missing {sorted(missing)}")
            self._finish(vote, self._fallback(vote), broadcast=False)

    def check_liveness(self, now: Optional[float] = None) -> list[Vote]:
        """Start votes for a missing leader or for peers gone silent."""
        now = now if now is not None else self.clock()
        started: list[Vote] = []

        if self.leader_id is None:
            started.append(self.start_vote(VoteType.ELECT_LEADER, ""))
        elif not self.is_leader and self.leader_id not in self.registry:
            started.append(self.start_vote(VoteType.ELECT_LEADER, self.leader_id))

        for node in list(self.registry):
            if node.is_self or node.node_id == self.node_id:
                continue
            if now - node.last_seen <= self.config.peer_timeout:
                continue

            if node.node_id == self.leader_id:
                logger.warning(f"Leader {node.node_id} silent for {now - node.last_seen:.0f}s")
                started.append(self.start_vote(VoteType.ELECT_LEADER, node.node_id))
            else:
                logger.warning(f"Plug {node.node_id} silent for {now - node.last_seen:.0f}s")
                started.append(self.start_vote(VoteType.REMOVE_NODE, node.node_id))

        return started

    # ==================== Outbound ====================

    def _message(self, vote: Vote, stage: VoteStage) -> VoteMessage:
        message = VoteMessage(
            uuid=vote.uuid,
            sender=self.node_id,
            stage=stage,
            type=vote.type,
            subject=vote.subject,
        )
        if stage in (VoteStage.INIT, VoteStage.ECHO):
            message.participants = sorted(vote.participants)
            message.started = self.started_at
        elif stage == VoteStage.CAST:
            message.ballot = vote.ballots.get(self.node_id)
        elif stage == VoteStage.TALLY:
            message.tally = vote.tallies.get(self.node_id)
        elif stage == VoteStage.COMPARE:
            message.result = vote.compares.get(self.node_id)
        elif stage == VoteStage.ACCEPTED:
            message.result = vote.result
        return message

    def _broadcast(self, vote: Vote, stage: VoteStage, targets: Optional[set[str]] = None) -> None:
        message = self._message(vote, stage)
        peers = targets if targets is not None else vote.participants - {self.node_id}
        for peer in sorted(peers):
            task = asyncio.create_task(self._deliver(peer, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, peer: str, message: VoteMessage) -> None:
        if await self.transport.send_vote(peer, message):
            return
        logger.debug(str(PeerUnreachable(peer, f"vote {message.uuid[:8]} stage {message.stage.name}")))
        vote = self.votes.get(message.uuid)
        if vote is not None:
            vote.errored[message.stage].add(peer)

    async def drain(self) -> None:
        """Wait for every outbound message sent so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def status(self) -> dict:
        return {
            "leader": self.leader_id,
            "is_leader": self.is_leader,
            "started_at": self.started_at,
            "votes": [vote.to_dict() for vote in self.votes.values()],
        }
