"""Tests for the ``kubebind`` command line."""

import orjson
from click.testing import CliRunner

from kubebind.bindings.identity import hash_uri
from kubebind.cli.main import cli


def write_records(tmp_path, payload) -> str:
    path = tmp_path / "endpoints.json"
    path.write_bytes(orjson.dumps(payload))
    return str(path)


RECORDS = [
    {"id": "ep_1", "uri": "/endpoints/ep_1", "proto": "http", "public_url": "http://web.ns"},
    {"id": "ep_2", "uri": "/endpoints/ep_2", "proto": "", "public_url": "http://web.ns:80"},
    {"id": "ep_3", "uri": "/endpoints/ep_3", "proto": "tcp", "public_url": "tcp://db.data:5432"},
]


class TestAggregateCommand:
    def test_json_output_groups_records(self, tmp_path):
        path = write_records(tmp_path, RECORDS)
        result = CliRunner().invoke(cli, ["aggregate", path, "--json", "--allow", "http://*"])

        assert result.exit_code == 0, result.output
        rows = orjson.loads(result.stdout)
        assert [row["endpoint_uri"] for row in rows] == [
            "http://web.ns:80",
            "tcp://db.data:5432",
        ]
        web, db = rows
        assert web["name"] == hash_uri("http://web.ns:80")
        assert web["endpoints"] == ["ep_1", "ep_2"]
        assert web["allowed"] is True
        assert db["allowed"] is False

    def test_accepts_api_page_shape(self, tmp_path):
        path = write_records(tmp_path, {"endpoints": RECORDS[:1], "uri": "/x"})
        result = CliRunner().invoke(cli, ["aggregate", path, "--json"])

        assert result.exit_code == 0, result.output
        assert len(orjson.loads(result.stdout)) == 1

    def test_table_output(self, tmp_path):
        path = write_records(tmp_path, RECORDS)
        result = CliRunner().invoke(cli, ["aggregate", path])

        assert result.exit_code == 0, result.output
        assert "BoundEndpoints (2)" in result.output

    def test_bad_record_fails(self, tmp_path):
        bad = RECORDS + [{"id": "ep_4", "public_url": "nodots"}]
        path = write_records(tmp_path, bad)
        result = CliRunner().invoke(cli, ["aggregate", path, "--json"])

        assert result.exit_code == 1
        assert "ep_4" in result.output

    def test_invalid_json_fails(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{nope")
        result = CliRunner().invoke(cli, ["aggregate", str(path)])

        assert result.exit_code == 1
