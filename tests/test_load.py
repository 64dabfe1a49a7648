"""Aggregate schema and BigQuery load tests (client mocked)."""

from unittest.mock import MagicMock

from google.cloud import bigquery
from google.cloud.exceptions import NotFound

from etl.load import load_aggregates
from utils.bq_schemas import aggregate_sentiment_schema


def _client(table_exists: bool = True) -> MagicMock:
    client = MagicMock(spec=bigquery.Client)
    client.project = "test-project"
    if not table_exists:
        client.get_table.side_effect = NotFound("missing")
        client.create_table.side_effect = lambda table, exists_ok: table

    job = MagicMock()
    job.job_id = "load-job-1"
    job.output_rows = 12
    client.load_table_from_uri.return_value = job
    return client


def test_aggregate_schema():
    schema = {field.name: (field.field_type, field.mode) for field in aggregate_sentiment_schema()}
    assert schema == {
        "geohash": ("STRING", "REQUIRED"),
        "theme": ("STRING", "REQUIRED"),
        "date": ("DATE", "REQUIRED"),
        "sentiment": ("FLOAT", "REQUIRED"),
    }


def test_load_expands_run_directory_to_part_files(settings):
    client = _client()

    result = load_aggregates(settings, "gs://bucket/aggregates/20240102T120000Z/", client=client)

    assert result == {
        "job_id": "load-job-1",
        "output_rows": 12,
        "source_uris": "gs://bucket/aggregates/20240102T120000Z/*.json*",
    }
    uri, table_ref = client.load_table_from_uri.call_args.args
    job_config = client.load_table_from_uri.call_args.kwargs["job_config"]
    assert uri == "gs://bucket/aggregates/20240102T120000Z/*.json*"
    assert table_ref == "test-project.gdelt.theme_sentiment"
    assert job_config.source_format == bigquery.SourceFormat.NEWLINE_DELIMITED_JSON
    assert job_config.write_disposition == bigquery.WriteDisposition.WRITE_APPEND


def test_load_keeps_explicit_glob(settings):
    client = _client()
    load_aggregates(settings, "gs://bucket/aggregates/run/part-00000.json.gz", client=client)
    assert client.load_table_from_uri.call_args.args[0] == "gs://bucket/aggregates/run/part-00000.json.gz"


def test_creates_partitioned_clustered_table_when_missing(settings):
    client = _client(table_exists=False)

    load_aggregates(settings, "gs://bucket/aggregates/run/", client=client)

    table = client.create_table.call_args.args[0]
    assert table.time_partitioning.field == "date"
    assert table.clustering_fields == ["geohash", "theme"]
    assert [f.name for f in table.schema] == ["geohash", "theme", "date", "sentiment"]


def test_existing_table_missing_columns_is_reported(settings, caplog):
    client = _client()
    client.get_table.return_value = bigquery.Table(
        "test-project.gdelt.theme_sentiment",
        schema=[bigquery.SchemaField("geohash", "STRING"), bigquery.SchemaField("theme", "STRING")],
    )

    with caplog.at_level("WARNING", logger="utils.bq"):
        load_aggregates(settings, "gs://bucket/aggregates/run/", client=client)

    client.create_table.assert_not_called()
    assert "['date', 'sentiment']" in caplog.text
