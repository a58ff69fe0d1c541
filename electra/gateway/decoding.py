"""
Boundary Decoders

Turns the fixed-shape tuples returned by contract reads into typed
entities. Both positional tuples (web3.py) and name-keyed mappings
(JSON-RPC proxies) are accepted; anything else is a DecodeError.

A DecodeError must never result in a cache entry. Callers decode
first, cache second.
"""

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from ..schemas import (
    Candidate,
    ElectionInfo,
    ElectionStatistics,
    EventKind,
    LedgerEventRecord,
    Role,
    UserRole,
    Voter,
    VoteRecord,
    WinnerInfo,
)


class DecodeError(Exception):
    """Raised when a raw ledger value does not have the expected shape."""

    def __init__(self, method: str, detail: str):
        super().__init__(f"Cannot decode {method}: {detail}")
        self.method = method
        self.detail = detail


ELECTION_INFO_FIELDS = (
    "title", "description", "startTime", "endTime", "registrationDeadline",
    "isActive", "isFinalized", "totalVoters", "totalVotes", "winnerID",
)
CANDIDATE_LIST_FIELDS = ("candidateIDs", "names", "parties", "voteCounts", "isActiveArray")
VOTER_INFO_FIELDS = (
    "isRegistered", "hasVoted", "candidateVoted", "voterID", "registrationTime",
)
USER_INFO_FIELDS = ("role", "isActive", "assignedAt", "assignedBy")
WINNER_FIELDS = ("winnerID", "winnerName", "winnerParty", "maxVotes", "isTie")
STATISTICS_FIELDS = (
    "totalRegisteredVoters", "totalVotesCast", "voterTurnoutPercentage",
    "activeCandidates", "totalCandidatesCount", "hasWinner", "electionComplete",
)
VOTE_RECORD_FIELDS = ("voter", "candidateID", "timestamp", "verificationHash")


def _unpack(method: str, raw: Any, names: tuple, optional: tuple = ()) -> dict:
    """Normalize a tuple or mapping into a name-keyed dict."""
    if isinstance(raw, Mapping):
        missing = [n for n in names if n not in raw]
        if missing:
            raise DecodeError(method, f"missing fields {missing}")
        out = {n: raw[n] for n in names}
        for n in optional:
            if n in raw:
                out[n] = raw[n]
        return out

    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        if len(raw) < len(names) or len(raw) > len(names) + len(optional):
            raise DecodeError(
                method, f"expected {len(names)} fields, got {len(raw)}"
            )
        out = dict(zip(names, raw))
        for n, value in zip(optional, raw[len(names):]):
            out[n] = value
        return out

    raise DecodeError(method, f"unexpected type {type(raw).__name__}")


def to_int(method: str, value: Any) -> int:
    if isinstance(value, bool):
        raise DecodeError(method, f"expected integer, got bool {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            pass
    raise DecodeError(method, f"expected integer, got {value!r}")


def to_bool(method: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise DecodeError(method, f"expected boolean, got {value!r}")


def to_str(method: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    raise DecodeError(method, f"expected string, got {value!r}")


def to_hex(value: Any) -> Optional[str]:
    """bytes32 → 0x-prefixed lowercase hex; strings pass through."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if hasattr(value, "hex") and not isinstance(value, str):
        text = value.hex()
        return text if text.startswith("0x") else "0x" + text
    return str(value).lower()


def decode_election_info(raw: Any) -> Optional[ElectionInfo]:
    """None when the contract has no election yet (zeroed struct)."""
    method = "getElectionInfo"
    f = _unpack(method, raw, ELECTION_INFO_FIELDS)
    start_time = to_int(method, f["startTime"])
    title = to_str(method, f["title"])
    if not title and start_time == 0:
        return None
    try:
        return ElectionInfo(
            title=title,
            description=to_str(method, f["description"]),
            registration_deadline=to_int(method, f["registrationDeadline"]),
            start_time=start_time,
            end_time=to_int(method, f["endTime"]),
            is_active=to_bool(method, f["isActive"]),
            is_finalized=to_bool(method, f["isFinalized"]),
            total_voters=to_int(method, f["totalVoters"]),
            total_votes=to_int(method, f["totalVotes"]),
            winner_id=to_int(method, f["winnerID"]),
        )
    except ValueError as e:
        raise DecodeError(method, str(e)) from e


def decode_candidates(raw: Any) -> list[Candidate]:
    """Parallel arrays → candidate list. An optional sixth array carries manifestos."""
    method = "getAllCandidates"
    f = _unpack(method, raw, CANDIDATE_LIST_FIELDS, optional=("manifestos",))
    columns = [f[n] for n in CANDIDATE_LIST_FIELDS]
    manifestos = f.get("manifestos")
    if manifestos is not None:
        columns.append(manifestos)

    lengths = {len(c) for c in columns}
    if len(lengths) > 1:
        raise DecodeError(method, f"parallel arrays have different lengths {sorted(lengths)}")

    candidates = []
    for i, cid in enumerate(f["candidateIDs"]):
        try:
            candidates.append(Candidate(
                id=to_int(method, cid),
                name=to_str(method, f["names"][i]),
                party=to_str(method, f["parties"][i]),
                manifesto=to_str(method, manifestos[i]) if manifestos is not None else "",
                vote_count=to_int(method, f["voteCounts"][i]),
                is_active=to_bool(method, f["isActiveArray"][i]),
            ))
        except ValueError as e:
            raise DecodeError(method, str(e)) from e
    return candidates


def decode_voter(address: str, raw: Any) -> Voter:
    method = "getVoterInfo"
    f = _unpack(method, raw, VOTER_INFO_FIELDS, optional=("verificationHash",))
    return Voter(
        address=address,
        is_registered=to_bool(method, f["isRegistered"]),
        has_voted=to_bool(method, f["hasVoted"]),
        candidate_voted=to_int(method, f["candidateVoted"]),
        voter_id=to_int(method, f["voterID"]),
        registration_time=to_int(method, f["registrationTime"]),
        verification_hash=to_hex(f.get("verificationHash")),
    )


def decode_user_role(address: str, raw: Any) -> UserRole:
    method = "getUserInfo"
    f = _unpack(method, raw, USER_INFO_FIELDS)
    role_value = to_int(method, f["role"])
    if role_value not in Role._value2member_map_:
        raise DecodeError(method, f"unknown role {role_value}")
    return UserRole(
        address=address,
        role=Role(role_value),
        is_active=to_bool(method, f["isActive"]),
        assigned_at=to_int(method, f["assignedAt"]),
        assigned_by=to_str(method, f["assignedBy"]),
    )


def decode_winner(raw: Any) -> WinnerInfo:
    method = "getCurrentWinner"
    f = _unpack(method, raw, WINNER_FIELDS)
    return WinnerInfo(
        winner_id=to_int(method, f["winnerID"]),
        winner_name=to_str(method, f["winnerName"]),
        winner_party=to_str(method, f["winnerParty"]),
        max_votes=to_int(method, f["maxVotes"]),
        is_tie=to_bool(method, f["isTie"]),
    )


def decode_statistics(raw: Any) -> ElectionStatistics:
    method = "getElectionStatistics"
    f = _unpack(method, raw, STATISTICS_FIELDS)
    return ElectionStatistics(
        total_registered_voters=to_int(method, f["totalRegisteredVoters"]),
        total_votes_cast=to_int(method, f["totalVotesCast"]),
        voter_turnout_percentage=to_int(method, f["voterTurnoutPercentage"]),
        active_candidates=to_int(method, f["activeCandidates"]),
        total_candidates_count=to_int(method, f["totalCandidatesCount"]),
        has_winner=to_bool(method, f["hasWinner"]),
        election_complete=to_bool(method, f["electionComplete"]),
    )


def decode_vote_record(record_id: int, raw: Any) -> VoteRecord:
    method = "getVoteRecord"
    f = _unpack(method, raw, VOTE_RECORD_FIELDS)
    return VoteRecord(
        id=record_id,
        voter=to_str(method, f["voter"]),
        candidate_id=to_int(method, f["candidateID"]),
        timestamp=to_int(method, f["timestamp"]),
        verification_hash=to_hex(f["verificationHash"]) or "",
    )


def parse_event_fields(args: Mapping) -> dict[str, Any]:
    """
    Drop positional duplicates and convert numeric strings.

    Some providers return both `args["0"]` and `args["voter"]`; only
    the named entries are kept.
    """
    parsed = {}
    for key, value in args.items():
        if isinstance(key, int) or (isinstance(key, str) and key.isdigit()):
            continue
        if isinstance(value, str) and value.isdigit():
            parsed[key] = int(value)
        elif isinstance(value, (bytes, bytearray)):
            parsed[key] = to_hex(value)
        else:
            parsed[key] = value
    return parsed


def decode_event(raw_event, received_at: Optional[datetime] = None) -> LedgerEventRecord:
    """RawEvent → LedgerEventRecord."""
    try:
        kind = EventKind(raw_event.name)
    except ValueError as e:
        raise DecodeError("event", f"unknown event {raw_event.name!r}") from e

    fields = parse_event_fields(raw_event.args)
    block_timestamp = raw_event.block_timestamp
    if block_timestamp is None and isinstance(fields.get("timestamp"), int):
        block_timestamp = fields["timestamp"]

    return LedgerEventRecord(
        kind=kind,
        fields=fields,
        block_timestamp=block_timestamp,
        received_at=received_at or datetime.now(timezone.utc),
        block_number=raw_event.block_number,
        tx_hash=raw_event.tx_hash,
        log_index=raw_event.log_index,
    )
