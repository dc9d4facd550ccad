import json
from unittest.mock import AsyncMock, patch

import pytest

from ledger_sync import cli
from services.transfers.orchestrator import SyncOutcome


def test_parser_subcommands():
    parser = cli.build_parser()

    args = parser.parse_args(["sync", "--from", "10", "--to", "20"])
    assert args.func is cli.cmd_sync
    assert (args.from_checkpoint, args.to_checkpoint) == (10, 20)

    args = parser.parse_args(["--env-file", "prod.env", "stats", "--all-time"])
    assert args.env_file == "prod.env"
    assert args.all_time is True
    assert args.func is cli.cmd_stats

    for name, func in (("init-db", cli.cmd_init_db), ("health", cli.cmd_health),
                       ("serve", cli.cmd_serve), ("watermark", cli.cmd_watermark)):
        assert parser.parse_args([name]).func is func


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_sync_requires_both_bounds(settings):
    args = cli.build_parser().parse_args(["sync", "--from", "10"])
    args.settings = settings

    with pytest.raises(SystemExit, match="together"):
        cli.cmd_sync(args)


def test_sync_prints_outcome(settings, capsys):
    args = cli.build_parser().parse_args(["sync"])
    args.settings = settings
    outcome = SyncOutcome(mode="checkpoint", processed_count=3, new_event_count=4)

    with patch.object(cli, "_with_service", AsyncMock(return_value=outcome)):
        cli.cmd_sync(args)

    printed = json.loads(capsys.readouterr().out)
    assert printed["processed_count"] == 3
    assert printed["new_event_count"] == 4


def test_sync_exits_non_zero_on_errors(settings, capsys):
    args = cli.build_parser().parse_args(["sync", "--from", "1", "--to", "5"])
    args.settings = settings
    outcome = SyncOutcome(mode="backfill", errors=["checkpoint 3: down"], failed_ranges=[(3, 5)])

    with patch.object(cli, "_with_service", AsyncMock(return_value=outcome)):
        with pytest.raises(SystemExit) as exc:
            cli.cmd_sync(args)

    assert exc.value.code == 2
    assert json.loads(capsys.readouterr().out)["failed_ranges"] == [[3, 5]]


def test_health_exits_when_unreachable(settings):
    args = cli.build_parser().parse_args(["health"])
    args.settings = settings

    with patch.object(cli, "_health", AsyncMock(return_value=False)):
        with pytest.raises(SystemExit) as exc:
            cli.cmd_health(args)

    assert exc.value.code == 1
