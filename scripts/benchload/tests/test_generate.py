"""Tests for synthetic input generation."""

from pathlib import Path

from benchload.config import GENSORT_RECORD_SIZE
from benchload.generate import generate_gensort, generate_kvbin
from benchload.partition import index_path_for, load_offset_index, plan_fixed, plan_variable
from benchload.records import VariableRecordReader, read_all_variable


class TestGenerateGensort:
    def test_writes_whole_records(self, tmp_path: Path) -> None:
        path = tmp_path / "data.gensort"

        size = generate_gensort(path, 250, seed=7)

        assert size == 250 * GENSORT_RECORD_SIZE
        assert path.stat().st_size == size
        assert plan_fixed(path, 4).expected_records == 250

    def test_seed_is_reproducible(self, tmp_path: Path) -> None:
        generate_gensort(tmp_path / "a", 10, seed=1)
        generate_gensort(tmp_path / "b", 10, seed=1)

        assert (tmp_path / "a").read_bytes() == (tmp_path / "b").read_bytes()


class TestGenerateKvbin:
    def test_index_entries_are_record_starts(self, tmp_path: Path) -> None:
        path = tmp_path / "data.kvbin"

        size = generate_kvbin(path, 95, index_every=10, seed=3)

        assert path.stat().st_size == size
        offsets = load_offset_index(index_path_for(path), size)
        assert len(offsets) == 11
        records = read_all_variable(path)
        for offset in offsets[1:-1]:
            with VariableRecordReader(path, offset) as reader:
                assert len(list(reader)) == 95 - offsets.index(offset) * 10
        assert len(records) == 95

    def test_no_index_by_default(self, tmp_path: Path) -> None:
        path = tmp_path / "data.kvbin"

        generate_kvbin(path, 5, seed=3)

        assert not index_path_for(path).exists()

    def test_generated_file_plans_in_parallel(self, tmp_path: Path) -> None:
        path = tmp_path / "data.kvbin"
        generate_kvbin(path, 200, index_every=7, seed=11)

        plan = plan_variable(path, 4)

        total = 0
        for partition in plan.partitions:
            with plan.open_reader(partition) as reader:
                total += len(list(reader))
        assert len(plan.partitions) == 4
        assert total == 200
