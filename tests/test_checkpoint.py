import json
import os
from unittest.mock import patch

import pytest

from polite_scraper.core.checkpoint import Checkpoint, CheckpointStore
from polite_scraper.exceptions import CheckpointCorrupt
from polite_scraper.pipeline.pipeline_data import FetchTask


def sample_checkpoint():
    return Checkpoint(
        pending=[FetchTask("https://shop.example.test/p2", attempt_count=2,
                           next_eligible_time=1234.5, backoff_seconds=8.0, depth=1)],
        seen_ids={"A1", "A2"},
        emitted_count=2,
        seen_urls={"https://shop.example.test/", "https://shop.example.test/p2"},
        pages_fetched=1,
        failed_urls=["https://shop.example.test/gone"],
    )


class TestCheckpointStore:
    def test_save_and_load(self, tmp_path):
        store = CheckpointStore(str(tmp_path / "state" / "checkpoint.json"))
        store.save(sample_checkpoint())

        loaded = store.load()
        assert loaded.seen_ids == {"A1", "A2"}
        assert loaded.emitted_count == 2
        assert loaded.pending[0].attempt_count == 2
        assert loaded.pending[0].backoff_seconds == 8.0
        assert loaded.failed_urls == ["https://shop.example.test/gone"]

    def test_missing_file_is_empty(self, tmp_path):
        checkpoint = CheckpointStore(str(tmp_path / "none.json")).load()
        assert checkpoint.is_empty
        assert checkpoint.pending == []

    def test_tampered_payload_fails_checksum(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        store = CheckpointStore(str(path))
        store.save(sample_checkpoint())

        document = json.loads(path.read_text())
        document["payload"]["emitted_count"] = 1
        document["payload"]["seen_ids"] = ["A1"]
        path.write_text(json.dumps(document))

        with pytest.raises(CheckpointCorrupt):
            store.load()

    @pytest.mark.parametrize("content", [
        "{not json",
        "[]",
        json.dumps({"version": 99, "checksum": "", "payload": {}}),
    ])
    def test_garbage_is_corrupt(self, tmp_path, content):
        path = tmp_path / "checkpoint.json"
        path.write_text(content)
        with pytest.raises(CheckpointCorrupt):
            CheckpointStore(str(path)).load()

    def test_crash_mid_save_keeps_previous_checkpoint(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        store = CheckpointStore(str(path))
        store.save(sample_checkpoint())

        newer = sample_checkpoint()
        newer.seen_ids.add("A3")
        newer.emitted_count = 3
        with patch("polite_scraper.pipeline.stages.storage_stage.os.replace",
                   side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save(newer)

        assert store.load().emitted_count == 2
        assert [p.name for p in tmp_path.iterdir()] == ["checkpoint.json"]

    def test_clear(self, tmp_path):
        path = tmp_path / "checkpoint.json"
        store = CheckpointStore(str(path))
        store.save(sample_checkpoint())
        store.clear()
        assert not path.exists()
        store.clear()


def test_inconsistent_emitted_count_is_corrupt():
    data = sample_checkpoint().to_dict()
    data["emitted_count"] = 5
    with pytest.raises(CheckpointCorrupt):
        Checkpoint.from_dict(data)
