"""
Unit tests for the snapsync CLI.
"""

import json

import pytest
from typer.testing import CliRunner

from snapshot_sync.cli import app
from snapshot_sync.remote import JsonFileStore

runner = CliRunner()


@pytest.fixture
def source_dir(write_snapshot_file, make_rows):
    write_snapshot_file("profiles_2025_01_01_00_00_00.txt", make_rows(8, tag="old"))
    path = write_snapshot_file("profiles_2025_01_02_00_00_00.txt", make_rows(12, tag="new"))
    return path.parent


@pytest.fixture
def state_dirs(tmp_path):
    return [
        "--checkpoint-dir",
        str(tmp_path / "checkpoints"),
        "--snapshot-dir",
        str(tmp_path / "snapshots"),
    ]


def test_merge_writes_output_and_report(source_dir, tmp_path):
    out = tmp_path / "merged.txt"
    result = runner.invoke(app, ["merge", str(source_dir), "--output", str(out)])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["unique_records"] == 12
    assert summary["updates"] == 8
    assert out.exists()
    assert (tmp_path / "merged_merge_report.json").exists()


def test_merge_explicit_files(source_dir, tmp_path):
    files = sorted(str(p) for p in source_dir.glob("*.txt"))
    out = tmp_path / "merged.txt"
    result = runner.invoke(app, ["merge", *files, "--output", str(out)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["total_files"] == 2
    assert out.exists()


def test_merge_missing_directory_fails(tmp_path):
    result = runner.invoke(
        app, ["merge", str(tmp_path / "nope"), "--output", str(tmp_path / "m.txt")]
    )
    assert result.exit_code == 1


def test_analyze_is_dry_run(source_dir):
    before = sorted(p.name for p in source_dir.iterdir())
    result = runner.invoke(app, ["analyze", str(source_dir)])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["total_records"] == 20
    assert summary["compression_rate"] == 0.4
    assert sorted(p.name for p in source_dir.iterdir()) == before


def test_publish_and_status(source_dir, tmp_path, state_dirs):
    merged = tmp_path / "merged.txt"
    store_path = tmp_path / "store.json"
    runner.invoke(app, ["merge", str(source_dir), "--output", str(merged)])

    result = runner.invoke(
        app,
        [
            "publish",
            str(merged),
            "--target",
            "Profiles",
            "--store",
            str(store_path),
            "--rate-limit-ms",
            "0",
            *state_dirs,
        ],
    )

    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["ok"] is True
    assert summary["rows_processed"] == 13
    assert summary["staged"] is True
    assert JsonFileStore(store_path).names() == ["Profiles"]

    status = runner.invoke(
        app,
        ["status", "--target", "Profiles", "--store", str(store_path), state_dirs[0], state_dirs[1]],
    )
    assert status.exit_code == 0, status.output
    assert json.loads(status.stdout)["checkpoint"] is None


def test_publish_direct_with_limit(source_dir, tmp_path, state_dirs):
    store_path = tmp_path / "store.json"
    source = next(source_dir.glob("profiles_2025_01_02*"))
    result = runner.invoke(
        app,
        [
            "publish",
            str(source),
            "--target",
            "Profiles",
            "--store",
            str(store_path),
            "--no-staging",
            "--limit",
            "3",
            "--rate-limit-ms",
            "0",
            *state_dirs,
        ],
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["staged"] is False
    assert len(JsonFileStore(store_path).rows_of("Profiles")) == 4


def test_protect_and_cleanup_snapshots(source_dir, tmp_path, state_dirs):
    store_path = tmp_path / "store.json"
    source = next(source_dir.glob("profiles_2025_01_01*"))
    for _ in range(2):
        runner.invoke(
            app,
            [
                "publish",
                str(source),
                "--target",
                "Profiles",
                "--store",
                str(store_path),
                "--rate-limit-ms",
                "0",
                *state_dirs,
            ],
        )
    snapshots = sorted((tmp_path / "snapshots").glob("snapshot_*.json"))
    assert len(snapshots) == 2

    protect = runner.invoke(app, ["protect-snapshot", str(snapshots[0])])
    assert protect.exit_code == 0, protect.output

    cleanup = runner.invoke(
        app, ["cleanup-snapshots", "--retention-days", "-1", state_dirs[2], state_dirs[3]]
    )
    assert cleanup.exit_code == 0, cleanup.output
    assert json.loads(cleanup.stdout)["deleted"] == [snapshots[1].name]
    assert snapshots[0].exists()
