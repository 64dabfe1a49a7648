"""GCSClient tests with a mocked storage client."""

import gzip
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import Forbidden, NotFound, PreconditionFailed, ServiceUnavailable

from utils.gcs import (
    GCSClient,
    GCSError,
    GCSNotFoundError,
    GCSPermissionError,
    GCSPreconditionError,
    build_aggregate_path,
    build_raw_path,
    parse_gcs_uri,
)

CREATED = datetime(2024, 1, 1, 0, 20, tzinfo=timezone.utc)


@pytest.fixture
def storage_client():
    return MagicMock()


@pytest.fixture
def blob(storage_client):
    blob = MagicMock()
    blob.size = 42
    blob.time_created = CREATED
    storage_client.bucket.return_value.blob.return_value = blob
    return blob


@pytest.fixture
def gcs(storage_client):
    return GCSClient(project_id="test-project", client=storage_client)


class TestUpload:
    def test_compressed_create_only_upload(self, gcs, storage_client, blob, tmp_path):
        local = tmp_path / "20240101001500.gkg.csv"
        local.write_text("a\tb\n")
        uploaded = {}

        def _upload(path, **kwargs):
            with gzip.open(path, "rt") as f:
                uploaded["content"] = f.read()
            uploaded["kwargs"] = kwargs

        blob.upload_from_filename.side_effect = _upload

        result = gcs.upload_file(
            local, "gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv", compress=True, if_absent=True
        )

        storage_client.bucket.assert_called_with("bucket")
        storage_client.bucket.return_value.blob.assert_called_with(
            "raw/gkg/20240101001500/20240101001500.gkg.csv.gz"
        )
        assert uploaded["content"] == "a\tb\n"
        assert uploaded["kwargs"]["if_generation_match"] == 0
        assert result["gs_uri"] == "gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz"
        assert result["size"] == "42"
        # Only the original remains locally
        assert sorted(p.name for p in tmp_path.iterdir()) == ["20240101001500.gkg.csv"]

    def test_existing_object_raises_precondition_error(self, gcs, blob, tmp_path):
        local = tmp_path / "f.csv"
        local.write_text("x")
        blob.upload_from_filename.side_effect = PreconditionFailed("exists")

        with pytest.raises(GCSPreconditionError):
            gcs.upload_file(local, "gs://bucket/raw/f.csv.gz", if_absent=True)

    def test_forbidden_maps_to_permission_error(self, gcs, blob, tmp_path):
        local = tmp_path / "f.csv"
        local.write_text("x")
        blob.upload_from_filename.side_effect = Forbidden("nope")

        with pytest.raises(GCSPermissionError):
            gcs.upload_file(local, "gs://bucket/raw/f.csv.gz")

    def test_missing_local_file(self, gcs, tmp_path):
        with pytest.raises(FileNotFoundError):
            gcs.upload_file(tmp_path / "absent.csv", "gs://bucket/raw/absent.csv.gz")


class TestListAndDelete:
    def test_list_maps_creation_time(self, gcs, storage_client):
        item = MagicMock()
        item.name = "raw/gkg/20240101001500/20240101001500.gkg.csv.gz"
        item.size = 7
        item.time_created = CREATED
        storage_client.list_blobs.return_value = iter([item])

        objects = gcs.list_blobs("bucket", prefix="raw/")

        storage_client.list_blobs.assert_called_with("bucket", prefix="raw/")
        assert len(objects) == 1
        assert objects[0].gs_uri == "gs://bucket/raw/gkg/20240101001500/20240101001500.gkg.csv.gz"
        assert objects[0].created == CREATED

    def test_list_missing_bucket(self, gcs, storage_client):
        storage_client.list_blobs.side_effect = NotFound("no bucket")
        with pytest.raises(GCSNotFoundError):
            gcs.list_blobs("bucket")

    def test_delete_missing_object_returns_false(self, gcs, blob):
        blob.delete.side_effect = NotFound("gone")
        assert gcs.delete_blob("gs://bucket/raw/x.gz") is False

    def test_delete_retries_transient_errors(self, gcs, blob, monkeypatch):
        monkeypatch.setattr("utils.retry.time.sleep", lambda _s: None)
        blob.delete.side_effect = [ServiceUnavailable("busy"), None]
        assert gcs.delete_blob("gs://bucket/raw/x.gz") is True
        assert blob.delete.call_count == 2

    def test_exists_errors_propagate(self, gcs, blob):
        blob.exists.side_effect = RuntimeError("network")
        with pytest.raises(GCSError):
            gcs.exists("gs://bucket/raw/x.gz")


class TestJsonDocuments:
    URI = "gs://bucket/state/transform_ledger.json"

    def test_absent_document(self, gcs, storage_client):
        storage_client.bucket.return_value.get_blob.return_value = None
        assert gcs.read_json(self.URI) == (None, 0)

    def test_read_pins_generation(self, gcs, storage_client, blob):
        blob.generation = 7
        blob.download_as_bytes.return_value = b'{"transformed": {}}'
        storage_client.bucket.return_value.get_blob.return_value = blob

        assert gcs.read_json(self.URI) == ({"transformed": {}}, 7)
        blob.download_as_bytes.assert_called_once_with(if_generation_match=7)

    def test_replaced_while_reading(self, gcs, storage_client, blob):
        blob.generation = 7
        blob.download_as_bytes.side_effect = PreconditionFailed("replaced")
        storage_client.bucket.return_value.get_blob.return_value = blob

        with pytest.raises(GCSPreconditionError):
            gcs.read_json(self.URI)

    def test_conditional_write(self, gcs, blob):
        blob.generation = 8

        assert gcs.write_json(self.URI, {"b": 1, "a": 2}, if_generation_match=7) == 8

        args, kwargs = blob.upload_from_string.call_args
        assert args[0].index('"a"') < args[0].index('"b"')
        assert kwargs == {"content_type": "application/json", "if_generation_match": 7}

    def test_generation_mismatch_is_not_retried(self, gcs, blob):
        blob.upload_from_string.side_effect = PreconditionFailed("changed")

        with pytest.raises(GCSPreconditionError):
            gcs.write_json(self.URI, {}, if_generation_match=0)
        assert blob.upload_from_string.call_count == 1


class TestPaths:
    def test_parse(self):
        assert parse_gcs_uri("gs://bucket/raw/a/b.gz") == ("bucket", "raw/a/b.gz")

    @pytest.mark.parametrize("uri", ["s3://bucket/x", "gs://bucket", "gs:///x", "gs://bucket/"])
    def test_parse_rejects(self, uri):
        with pytest.raises(ValueError):
            parse_gcs_uri(uri)

    def test_builders(self):
        assert (
            build_raw_path("b", "gkg", "20240101001500", "20240101001500.gkg.csv")
            == "gs://b/raw/gkg/20240101001500/20240101001500.gkg.csv.gz"
        )
        assert build_aggregate_path("b", "20240102T120000Z") == "gs://b/aggregates/20240102T120000Z/"
