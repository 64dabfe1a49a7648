"""Spark job tests on a local session (skipped without pyspark or a JVM)."""

import gzip
import json
import shutil

import pytest

pytest.importorskip("pyspark")
if shutil.which("java") is None:
    pytest.skip("Spark needs a Java runtime", allow_module_level=True)

from pyspark.sql import SparkSession  # noqa: E402

from etl.spark_job import run_job  # noqa: E402
from etl.transform import transform_lines  # noqa: E402
from tests.fakes import make_gkg_line  # noqa: E402


@pytest.fixture(scope="module")
def spark():
    session = (
        SparkSession.builder
        .master("local[2]")
        .appName("gdelt-test")
        .config("spark.ui.enabled", "false")
        .getOrCreate()
    )
    yield session
    session.stop()


def test_spark_job_matches_local_transform(spark, tmp_path):
    lines = [
        make_gkg_line("a", themes="Economy:0.4"),
        make_gkg_line("b", themes="Economy:-0.1,Health:0.2"),
        make_gkg_line("c", themes="Economy:1,Crime:-2", lat=48.8566, lon=2.3522),
        make_gkg_line("d", themes="Economy:bad"),
    ]
    source = tmp_path / "batch.gkg.csv.gz"
    with gzip.open(source, "wt", encoding="utf-8") as f:
        f.writelines(lines)

    output = tmp_path / "aggregates"
    result = run_job(spark, [str(source)], str(output), precision=7)

    rows = []
    for part in sorted(output.glob("part-*.json.gz")):
        with gzip.open(part, "rt", encoding="utf-8") as f:
            rows.extend(json.loads(line) for line in f if line.strip())

    expected, _ = transform_lines(lines, precision=7)
    assert result == {"input_lines": 4, "aggregate_rows": len(expected)}
    assert (output / "_SUCCESS").exists()
    assert sorted((r["geohash"], r["theme"], r["date"], r["sentiment"]) for r in rows) == [
        (e.geohash, e.theme, e.date.isoformat(), e.sentiment) for e in expected
    ]
