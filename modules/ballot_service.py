"""Vote-token issuance, casting, and tallying for cl-hive-ballot."""

from __future__ import annotations

import json
import time
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from modules.ballot_store import BallotStore

CLOCK_KEY = "~election/clock"
COUNTER_KEY = "~election/last_token_id"
RESERVED_PREFIX = "~"

OUTCOME_NOT_STARTED = "NOT_STARTED"
OUTCOME_ENDED = "ENDED"
OUTCOME_CAST_OK = "CAST_OK"
OUTCOME_DOUBLE_SPEND = "DOUBLE_SPEND"

OUTCOME_CODES = {
    OUTCOME_NOT_STARTED: "0",
    OUTCOME_ENDED: "1",
    OUTCOME_CAST_OK: "2",
    OUTCOME_DOUBLE_SPEND: "3",
}

BLOCKED_NOT_STARTED = "not_started"
BLOCKED_NOT_CLOSED = "not_closed"


class BallotIntegrityError(RuntimeError):
    """Ledger state contradicts an earlier read within the same transaction."""


class TokenIntegrityError(BallotIntegrityError):
    """A token matched by the scan is missing or unreadable on re-fetch."""


class DoubleVoteError(BallotIntegrityError):
    """A token matched as unspent turned out to be cast already."""


def _encode_json(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _encode_token(owner_id: str, has_voted: bool) -> bytes:
    return _encode_json({"ownerId": owner_id, "hasVoted": has_voted})


def _decode_token(raw: bytes) -> Optional[Dict[str, Any]]:
    try:
        token = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(token, dict):
        return None
    owner_id = token.get("ownerId")
    has_voted = token.get("hasVoted")
    if not isinstance(owner_id, str) or not isinstance(has_voted, bool):
        return None
    return {"ownerId": owner_id, "hasVoted": has_voted}


def _format_close_time(end_time: Optional[int]) -> str:
    if end_time is None:
        return ""
    return datetime.fromtimestamp(end_time, tz=timezone.utc).isoformat()


class BallotService:
    """Service API used by cl-hive-ballot RPC methods.

    Tokens live in the ledger under their decimal id. The election clock and
    the last issued token id live under reserved ``~election/`` keys and are
    always read and written inside the same transaction as the tokens.
    """

    MAX_ID_LEN = 128
    MAX_BATCH_SIZE = 10_000

    def __init__(
        self,
        store: BallotStore,
        logger: Optional[Callable[[str, str], None]] = None,
        allow_rearm: bool = False,
        max_duration_minutes: int = 10_080,
        time_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self._logger = logger
        self.allow_rearm = bool(allow_rearm)
        self.max_duration_minutes = max(1, int(max_duration_minutes))
        self._time_fn = time_fn
        self.store.initialize()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _now(self) -> int:
        return int(self._time_fn())

    def _normalize_id(self, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        value = value.strip()
        if not value or len(value) > self.MAX_ID_LEN:
            return None
        if value.startswith(RESERVED_PREFIX):
            return None
        return value

    def _parse_duration(self, value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            minutes = value
        elif isinstance(value, str):
            try:
                minutes = int(value.strip())
            except ValueError:
                return None
        else:
            return None
        if minutes < 1 or minutes > self.max_duration_minutes:
            return None
        return minutes

    def _read_clock(self) -> Dict[str, Any]:
        clock: Dict[str, Any] = {
            "started": False,
            "endTime": None,
            "openedAt": None,
            "rearmCount": 0,
        }
        raw = self.store.get_state(CLOCK_KEY)
        if raw is not None:
            clock.update(json.loads(raw.decode("utf-8")))
        return clock

    def _read_last_token_id(self) -> int:
        raw = self.store.get_state(COUNTER_KEY)
        return int(raw.decode("utf-8")) if raw is not None else -1

    def _scan_tokens(self, last_token_id: int) -> Iterator[Tuple[str, Dict[str, Any]]]:
        with self.store.state_by_range("0", str(last_token_id + 1)) as rows:
            for key, raw in rows:
                token = _decode_token(raw)
                if token is None:
                    self._log(f"ballot: skipping malformed token record {key}", "warn")
                    continue
                yield key, token

    def _find_unspent_token(self, voter_id: str, last_token_id: int) -> Optional[str]:
        with closing(self._scan_tokens(last_token_id)) as tokens:
            for key, token in tokens:
                if token["ownerId"] == voter_id and not token["hasVoted"]:
                    return key
        return None

    def _tally_gate(self, clock: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not clock["started"]:
            return {
                "ok": False,
                "status": "blocked",
                "reason": BLOCKED_NOT_STARTED,
                "error": "voting has not started",
            }
        end_time = int(clock["endTime"])
        if self._now() < end_time:
            return {
                "ok": False,
                "status": "blocked",
                "reason": BLOCKED_NOT_CLOSED,
                "error": "voting has not ended",
                "end_time": end_time,
                "close_time": _format_close_time(end_time),
            }
        return None

    def _allocate_token(self, voter_id: str) -> str:
        token_id = self._read_last_token_id() + 1
        key = str(token_id)
        self.store.put_state(key, _encode_token(voter_id, False))
        self.store.put_state(COUNTER_KEY, str(token_id).encode("utf-8"))
        return key

    def issue_token(self, voter_id: str) -> Dict[str, Any]:
        voter = self._normalize_id(voter_id)
        if voter is None:
            return {"error": f"invalid voter_id (1-{self.MAX_ID_LEN} chars, must not start with '~')"}

        with self.store.transaction():
            token_id = self._allocate_token(voter)

        self._log(f"ballot: issued token {token_id}", "info")
        return {"ok": True, "token_id": token_id, "voter_id": voter}

    def issue_tokens(self, voter_ids: List[Any]) -> Dict[str, Any]:
        if not isinstance(voter_ids, list) or not voter_ids:
            return {"error": "voter_ids must be a non-empty list"}
        if len(voter_ids) > self.MAX_BATCH_SIZE:
            return {"error": f"too many voter_ids (max {self.MAX_BATCH_SIZE})"}

        voters: List[str] = []
        for item in voter_ids:
            voter = self._normalize_id(item)
            if voter is None:
                return {"error": "invalid voter_id in batch", "voter_id": item}
            voters.append(voter)

        with self.store.transaction():
            token_ids = [self._allocate_token(voter) for voter in voters]

        self._log(f"ballot: issued {len(token_ids)} tokens ({token_ids[0]}..{token_ids[-1]})", "info")
        return {"ok": True, "count": len(token_ids), "token_ids": token_ids}

    def open_election(self, duration_minutes: Any, force: bool = False) -> Dict[str, Any]:
        minutes = self._parse_duration(duration_minutes)
        if minutes is None:
            return {"error": f"invalid duration_minutes (integer 1-{self.max_duration_minutes})"}

        with self.store.transaction():
            clock = self._read_clock()
            rearm_count = int(clock.get("rearmCount") or 0)
            rearmed = bool(clock["started"])
            if rearmed:
                if not force:
                    self._log("ballot: open rejected, election already opened", "warn")
                    return {
                        "error": "election already opened",
                        "end_time": clock["endTime"],
                        "hint": "pass force=true to re-arm the window",
                    }
                if not self.allow_rearm:
                    self._log("ballot: forced re-arm rejected, re-arming is disabled", "warn")
                    return {
                        "error": "re-arming the election is disabled",
                        "hint": "set hive-ballot-allow-rearm=true",
                    }
                rearm_count += 1

            now_ts = self._now()
            end_time = now_ts + minutes * 60
            self.store.put_state(
                CLOCK_KEY,
                _encode_json(
                    {
                        "started": True,
                        "endTime": end_time,
                        "openedAt": now_ts,
                        "rearmCount": rearm_count,
                    }
                ),
            )

        if rearmed:
            self._log(
                f"ballot: election window re-armed by admin (rearm #{rearm_count}), "
                f"previous end_time={clock['endTime']} new end_time={end_time}",
                "warn",
            )
        else:
            self._log(f"ballot: election opened until {_format_close_time(end_time)}", "info")

        return {
            "ok": True,
            "end_time": end_time,
            "close_time": _format_close_time(end_time),
            "rearm_count": rearm_count,
        }

    def cast_vote(self, voter_id: str, candidate_id: str) -> Dict[str, Any]:
        voter = self._normalize_id(voter_id)
        if voter is None:
            return {"error": "invalid voter_id"}
        candidate = self._normalize_id(candidate_id)
        if candidate is None:
            return {"error": "invalid candidate_id"}

        with self.store.transaction():
            clock = self._read_clock()
            if not clock["started"]:
                return {
                    "ok": False,
                    "outcome": OUTCOME_NOT_STARTED,
                    "code": OUTCOME_CODES[OUTCOME_NOT_STARTED],
                    "error": "voting has not started",
                }
            if self._now() > int(clock["endTime"]):
                return {
                    "ok": False,
                    "outcome": OUTCOME_ENDED,
                    "code": OUTCOME_CODES[OUTCOME_ENDED],
                    "error": "voting has ended",
                }

            token_id = self._find_unspent_token(voter, self._read_last_token_id())
            if token_id is None:
                self._log(f"ballot: double spend rejected for voter {voter}", "warn")
                return {
                    "ok": False,
                    "outcome": OUTCOME_DOUBLE_SPEND,
                    "code": OUTCOME_CODES[OUTCOME_DOUBLE_SPEND],
                    "error": "no unspent token for voter (not registered or already voted)",
                }

            raw = self.store.get_state(token_id)
            if raw is None:
                raise TokenIntegrityError(f"token {token_id} vanished before it could be cast")
            token = _decode_token(raw)
            if token is None:
                raise TokenIntegrityError(f"token {token_id} is not a readable vote token")
            if token["hasVoted"]:
                raise DoubleVoteError(f"token {token_id} has already been cast")

            self.store.put_state(token_id, _encode_token(candidate, True))

        self._log(f"ballot: token {token_id} cast", "info")
        return {
            "ok": True,
            "outcome": OUTCOME_CAST_OK,
            "code": OUTCOME_CODES[OUTCOME_CAST_OK],
            "token_id": token_id,
            "candidate_id": candidate,
        }

    def get_results(self) -> Dict[str, Any]:
        with self.store.transaction(write=False):
            blocked = self._tally_gate(self._read_clock())
            if blocked:
                return blocked

            counts: Dict[str, int] = {}
            for _, token in self._scan_tokens(self._read_last_token_id()):
                if token["hasVoted"]:
                    owner_id = token["ownerId"]
                    counts[owner_id] = counts.get(owner_id, 0) + 1

        results = [
            {"candidateId": candidate_id, "voteCount": vote_count}
            for candidate_id, vote_count in counts.items()
        ]
        total_votes = sum(counts.values())
        self._log(f"ballot: tallied {total_votes} votes across {len(results)} candidates", "info")
        return {
            "ok": True,
            "status": "ok",
            "results": results,
            "total_votes": total_votes,
        }

    def query_all_cast(self) -> Dict[str, Any]:
        with self.store.transaction(write=False):
            blocked = self._tally_gate(self._read_clock())
            if blocked:
                return blocked

            votes = [
                {"tokenId": key, "token": token}
                for key, token in self._scan_tokens(self._read_last_token_id())
                if token["hasVoted"]
            ]

        return {
            "ok": True,
            "status": "ok",
            "count": len(votes),
            "votes": votes,
        }

    def status(self) -> Dict[str, Any]:
        with self.store.transaction(write=False):
            clock = self._read_clock()
            last_token_id = self._read_last_token_id()

        end_time = clock["endTime"]
        # At exactly end_time the phase is still "open" (casting accepted),
        # while _tally_gate already lets results through.
        if not clock["started"]:
            phase = "pending"
        elif self._now() > int(end_time):
            phase = "closed"
        else:
            phase = "open"

        return {
            "ok": True,
            "phase": phase,
            "started": bool(clock["started"]),
            "end_time": end_time,
            "close_time": _format_close_time(end_time),
            "tokens_issued": last_token_id + 1,
            "rearm_count": int(clock.get("rearmCount") or 0),
            "allow_rearm": self.allow_rearm,
        }
