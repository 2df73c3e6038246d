#!/usr/bin/env python3
"""cl-hive-ballot: vote-token election plugin."""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Dict

# Ensure this script's real directory is on sys.path so that `from modules.X`
# works even when CLN loads the plugin via a symlink in the plugins directory.
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from pyln.client import Plugin

from modules.ballot_service import BallotService
from modules.ballot_store import BallotStore

plugin = Plugin()
service: BallotService | None = None


plugin.add_option(
    name="hive-ballot-db-path",
    default="~/.lightning/cl_hive_ballot.db",
    description="SQLite path for cl-hive-ballot ledger state",
)

plugin.add_option(
    name="hive-ballot-allow-rearm",
    default="false",
    description="Allow hive-ballot-open force=true to re-arm an already opened election",
)

plugin.add_option(
    name="hive-ballot-max-duration-minutes",
    default="10080",
    description="Longest election window accepted by hive-ballot-open",
)


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _logger(message: str, level: str = "info") -> None:
    plugin.log(message, level=level)


def _require_service() -> BallotService:
    if service is None:
        raise RuntimeError("service not initialized")
    return service


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs: Any) -> None:
    del kwargs

    db_path_opt = str(options.get("hive-ballot-db-path") or "~/.lightning/cl_hive_ballot.db")
    db_path = os.path.expanduser(db_path_opt)
    if not os.path.isabs(db_path):
        lightning_dir = str(configuration.get("lightning-dir") or os.path.expanduser("~/.lightning"))
        db_path = os.path.join(lightning_dir, db_path)

    allow_rearm = _parse_bool(options.get("hive-ballot-allow-rearm"))
    max_duration = max(1, _parse_int(options.get("hive-ballot-max-duration-minutes"), 10_080))

    store = BallotStore(db_path=db_path, logger=_logger)

    global service
    service = BallotService(
        store=store,
        logger=_logger,
        allow_rearm=allow_rearm,
        max_duration_minutes=max_duration,
    )

    plugin.log(
        "cl-hive-ballot initialized "
        f"(db_path={db_path}, allow_rearm={allow_rearm}, max_duration_minutes={max_duration})"
    )


@plugin.method("hive-ballot-issue")
def hive_ballot_issue(plugin: Plugin, voter_id: str) -> Dict[str, Any]:
    del plugin
    return _require_service().issue_token(voter_id=voter_id)


@plugin.method("hive-ballot-issue-batch")
def hive_ballot_issue_batch(plugin: Plugin, voter_ids_json: str) -> Dict[str, Any]:
    del plugin

    try:
        voter_ids = json.loads(voter_ids_json)
    except (json.JSONDecodeError, TypeError):
        return {"error": "invalid voter_ids_json"}

    return _require_service().issue_tokens(voter_ids=voter_ids)


@plugin.method("hive-ballot-open")
def hive_ballot_open(plugin: Plugin, duration_minutes: str, force: str = "false") -> Dict[str, Any]:
    del plugin
    return _require_service().open_election(
        duration_minutes=duration_minutes,
        force=_parse_bool(force),
    )


@plugin.method("hive-ballot-cast")
def hive_ballot_cast(plugin: Plugin, voter_id: str, candidate_id: str) -> Dict[str, Any]:
    del plugin
    return _require_service().cast_vote(voter_id=voter_id, candidate_id=candidate_id)


@plugin.method("hive-ballot-results")
def hive_ballot_results(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().get_results()


@plugin.method("hive-ballot-cast-list")
def hive_ballot_cast_list(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().query_all_cast()


@plugin.method("hive-ballot-status")
def hive_ballot_status(plugin: Plugin) -> Dict[str, Any]:
    del plugin
    return _require_service().status()


if __name__ == "__main__":
    plugin.run()
