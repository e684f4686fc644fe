from __future__ import annotations

import pytest

from agent_conductor.cli import _parse_args


def test_run_routine_parses_json_params() -> None:
    args = _parse_args(["run-routine", "4", "--user-id", "1", "--params", '{"goal": "Ship"}'])

    assert args.command == "run-routine"
    assert args.routine_id == 4
    assert args.params == {"goal": "Ship"}


def test_run_task_requires_agent() -> None:
    args = _parse_args(["run-task", "9", "--agent-id", "3", "--user-id", "1"])
    assert (args.task_id, args.agent_id, args.user_id) == (9, 3, 1)

    with pytest.raises(SystemExit):
        _parse_args(["run-task", "9", "--user-id", "1"])


def test_serve_defaults() -> None:
    args = _parse_args(["serve"])

    assert args.host == "127.0.0.1"
    assert args.port == 8000
