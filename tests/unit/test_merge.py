"""
Unit tests for the source record merger (newest-wins merge over snapshot files).
"""

import json
import os

import pytest

from snapshot_sync.errors import MergeError
from snapshot_sync.merge import (
    REPORT_SUFFIX,
    SourceRecordMerger,
    analyze,
    build_report,
    diff_fields,
    discover_source_files,
    load_source_file,
    merge_directory,
    merge_files,
    render_merged,
    report_path_for,
    write_merged,
)


def row(key, f5="a", provenance="", name="n"):
    fields = [name, key] + [f"x{i}" for i in range(2, 23)] + [provenance]
    fields[5] = f5
    return fields


@pytest.fixture
def three_files(write_snapshot_file, header):
    """Scenario: key K changes field 5 at T1 < T2 < T3."""
    f1 = write_snapshot_file("profiles_2025_01_01_00_00_00.txt", [header, row("K", "t1"), row("100")])
    f2 = write_snapshot_file("profiles_2025_01_02_00_00_00.txt", [header, row("K", "t2"), row("200")])
    f3 = write_snapshot_file("profiles_2025_01_03_00_00_00.txt", [header, row("K", "t3")])
    return [f1, f2, f3]


class TestMerge:
    def test_newest_value_wins_with_full_history(self, three_files):
        # reversed input order must not matter
        files = [load_source_file(p) for p in reversed(three_files)]
        result = SourceRecordMerger().merge(files)

        k = next(r for r in result.records if r.key == "K")
        assert k.fields[5] == "t3"
        assert len(k.history) == 3
        assert [h.action for h in k.history] == ["created", "updated", "updated"]
        assert [h.changed_fields for h in k.history[1:]] == [[5], [5]]
        stamps = [h.timestamp for h in k.history]
        assert stamps == sorted(stamps)
        assert k.source_file == "profiles_2025_01_03_00_00_00.txt"

    def test_stats_balance(self, three_files):
        result = SourceRecordMerger().merge([load_source_file(p) for p in three_files])
        s = result.stats
        assert s.total_files == 3
        assert s.total_records == 5
        assert s.unique_records == 3
        assert s.updates == 2
        assert s.duplicates == 0
        assert s.total_records == s.unique_records + s.duplicates + s.updates

    def test_older_provenance_never_overwrites(self, write_snapshot_file, header):
        f1 = write_snapshot_file("p_2025_01_05.txt", [header, row("K", "new")])
        # newer file, but the row says it came from an older snapshot
        f2 = write_snapshot_file("p_2025_01_09.txt", [header, row("K", "old", provenance="p_2025_01_01.txt")])

        result = SourceRecordMerger().merge([load_source_file(f1), load_source_file(f2)])

        assert result.records[0].fields[5] == "new"
        assert result.stats.duplicates == 1
        assert result.stats.updates == 0
        assert len(result.records[0].history) == 1

    def test_equal_timestamps_tie_break(self, write_snapshot_file, header):
        a = write_snapshot_file("a_2025_01_01.txt", [header, row("K", "first")])
        b = write_snapshot_file("b_2025_01_01.txt", [header, row("K", "second")])
        files = [load_source_file(a), load_source_file(b)]

        kept = SourceRecordMerger(tie_break="first").merge(files)
        assert kept.records[0].fields[5] == "first"
        assert kept.stats.duplicates == 1

        replaced = SourceRecordMerger(tie_break="last").merge(files)
        assert replaced.records[0].fields[5] == "second"
        assert replaced.stats.updates == 1

    def test_invalid_tie_break(self):
        with pytest.raises(ValueError):
            SourceRecordMerger(tie_break="newest")

    def test_skips_blank_keyless_and_repeated_header_rows(self, write_snapshot_file, header):
        path = write_snapshot_file(
            "p_2025_01_01.txt",
            [header, row("1"), [""], ["only-one-field"], row(""), header, row("2")],
        )
        result = SourceRecordMerger().merge([load_source_file(path)])
        assert [r.key for r in result.records] == ["2", "1"]
        assert result.stats.total_records == 2
        assert result.header == header

    def test_output_order_numeric_first_then_text_descending(self, write_snapshot_file, header):
        path = write_snapshot_file(
            "p_2025_01_01.txt", [header, row("9"), row("abc"), row("10"), row("zed")]
        )
        result = SourceRecordMerger().merge([load_source_file(path)])
        assert [r.key for r in result.records] == ["10", "9", "zed", "abc"]

    def test_provenance_backfilled_and_short_rows_padded(self, write_snapshot_file, header):
        path = write_snapshot_file("p_2025_01_01.txt", [header, ["n", "7", "a"], row("8")])
        result = SourceRecordMerger().merge([load_source_file(path)])
        for record in result.records:
            assert len(record.fields) == 24
            assert record.fields[23] == "p_2025_01_01.txt"

    def test_file_without_timestamp_uses_mtime(self, write_snapshot_file, header):
        path = write_snapshot_file("profiles.txt", [header, row("1")])
        os.utime(path, (1_700_000_000, 1_700_000_000))
        source = load_source_file(path)
        assert source.from_name is False
        assert source.file_timestamp == 1_700_000_000_000

    def test_no_files(self):
        with pytest.raises(MergeError):
            SourceRecordMerger().merge([])


class TestIdempotence:
    def test_identical_inputs_give_identical_bytes(self, three_files, tmp_path):
        files = [load_source_file(p) for p in three_files]
        a = write_merged(SourceRecordMerger().merge(files), tmp_path / "a.txt")
        b = write_merged(SourceRecordMerger().merge(files), tmp_path / "b.txt")
        assert a.read_bytes() == b.read_bytes()

    def test_remerging_output_with_inputs_is_stable(self, three_files, tmp_path):
        files = [load_source_file(p) for p in three_files]
        first = SourceRecordMerger().merge(files)
        merged_path = write_merged(first, tmp_path / "merged.txt")

        again = SourceRecordMerger().merge(files + [load_source_file(merged_path)])
        assert render_merged(again) == render_merged(first)

        alone = SourceRecordMerger().merge([load_source_file(merged_path)])
        assert render_merged(alone) == render_merged(first)


class TestReport:
    def test_report_shape(self, three_files):
        result = SourceRecordMerger().merge([load_source_file(p) for p in three_files])
        report = build_report(result)

        assert report["conflictResolution"] == "latest_wins"
        assert report["summary"] == {
            "totalFiles": 3,
            "totalRecords": 5,
            "uniqueRecords": 3,
            "duplicates": 0,
            "updates": 2,
        }
        assert [f["name"] for f in report["files"]] == [p.name for p in three_files]
        top = report["topUpdates"][0]
        assert top["key"] == "K"
        assert top["updateCount"] == 2
        assert top["sources"] == [p.name for p in three_files]

    def test_merge_directory_writes_output_and_report(self, three_files, tmp_path):
        out = tmp_path / "out" / "merged.txt"
        result = merge_directory(three_files[0].parent, out)

        assert out.exists()
        report = json.loads(report_path_for(out).read_text(encoding="utf-8"))
        assert report["summary"]["uniqueRecords"] == result.stats.unique_records
        lines = out.read_text(encoding="utf-8").split("\n")
        assert lines[-1] == ""  # newline-terminated
        assert len(lines) - 1 == result.stats.unique_records + 1

    def test_merge_into_source_directory_skips_own_output(self, three_files):
        out = three_files[0].parent / "merged.txt"
        merge_directory(out.parent, out)
        again = merge_directory(out.parent, out)

        assert again.stats.total_files == 3

    def test_merge_files_rejects_output_as_only_source(self, three_files, tmp_path):
        out = tmp_path / "merged.txt"
        merge_files([load_source_file(p) for p in three_files], out)
        with pytest.raises(MergeError):
            merge_files([load_source_file(out)], out)

    def test_discover_skips_reports(self, three_files):
        directory = three_files[0].parent
        (directory / f"old{REPORT_SUFFIX}").write_text("{}", encoding="utf-8")
        names = [f.name for f in discover_source_files(directory, "*")]
        assert not any(n.endswith(REPORT_SUFFIX) for n in names)
        assert len(names) == 3

    def test_analyze_writes_nothing(self, three_files):
        directory = three_files[0].parent
        before = sorted(p.name for p in directory.iterdir())
        result = analyze(discover_source_files(directory))
        assert result.stats.unique_records == 3
        assert sorted(p.name for p in directory.iterdir()) == before


def test_diff_fields_treats_missing_as_empty():
    assert diff_fields(["a", "b"], ["a", "c", ""]) == [1]
    assert diff_fields(["a"], ["a", "x"]) == [1]
