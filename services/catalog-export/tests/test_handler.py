"""Tests for the action entrypoints."""

import asyncio
import base64
import gzip
import json

import pytest

from catalog_export import cache
from catalog_export.handler import (
    browse_files_handler,
    build_response,
    delete_file_handler,
    download_file_handler,
    handler,
    parse_params,
)
from catalog_export.exceptions import ConfigurationError
from catalog_export.storage import FilesStorage, S3Storage

from conftest import BASE_URL, FakeCommerce, make_product

CSV = b"sku,name\r\nA,Alpha\r\n"


@pytest.fixture(autouse=True)
def clear_shared_caches():
    cache.token_cache.clear()
    cache.category_cache.clear()
    yield
    cache.token_cache.clear()
    cache.category_cache.clear()


@pytest.fixture
def environ(tmp_path):
    return {
        "COMMERCE_BASE_URL": BASE_URL,
        "COMMERCE_ADMIN_USERNAME": "admin",
        "COMMERCE_ADMIN_PASSWORD": "secret",
        "STORAGE_PROVIDER": "files",
        "FILES_ROOT": str(tmp_path),
        "ACTION_BASE_URL": "https://actions.example.com",
        "REQUEST_DELAY_MS": "0",
    }


class TestParseParams:
    """Tests for parameter merging."""

    def test_body_overrides_query(self):
        event = {
            "queryStringParameters": {"env": "prod", "fields": "sku"},
            "body": json.dumps({"env": "dev"}),
            "headers": {"Content-Type": "application/json"},
        }
        assert parse_params(event) == {"env": "dev", "fields": "sku"}

    def test_form_body(self):
        event = {
            "body": "fields=sku%2Cname&include_inventory=false",
            "headers": {"content-type": "application/x-www-form-urlencoded"},
        }
        assert parse_params(event) == {"fields": "sku,name", "include_inventory": "false"}

    def test_base64_body(self):
        event = {"body": base64.b64encode(b'{"fileName": "a.csv"}').decode(), "isBase64Encoded": True}
        assert parse_params(event) == {"fileName": "a.csv"}

    def test_flat_params(self):
        event = {"fields": "sku", "__ow_method": "post", "__ow_headers": {}}
        assert parse_params(event) == {"fields": "sku"}

    def test_invalid_json_body(self):
        with pytest.raises(ConfigurationError):
            parse_params({"body": "{not json"})


def test_build_response_adds_cors_and_duration():
    response = build_response(200, {"success": True}, start_time=0.0)

    assert response["statusCode"] == 200
    assert response["headers"]["Access-Control-Allow-Origin"] == "*"
    assert response["body"]["durationMs"] > 0


class TestExportHandler:
    """Tests for the export action."""

    def test_successful_export(self, environ, tmp_path):
        commerce = FakeCommerce([make_product(i) for i in range(1, 4)])

        response = handler({"queryStringParameters": {}}, None, environ=environ, transport=commerce.transport())

        assert response["statusCode"] == 200
        body = response["body"]
        assert body["success"] is True
        assert body["performance"]["productCount"] == 3
        assert body["file"]["downloadUrl"] == "https://actions.example.com/download-file?fileName=products.csv"
        assert (tmp_path / "public" / "products.csv").exists()

    def test_dev_mode_from_query(self, environ, tmp_path):
        commerce = FakeCommerce([make_product(1)])

        response = handler(
            {"queryStringParameters": {"env": "dev"}}, None, environ=environ, transport=commerce.transport()
        )

        assert response["statusCode"] == 200
        assert "file" not in response["body"]
        assert not (tmp_path / "public").exists()

    def test_missing_base_url_is_400(self, environ):
        del environ["COMMERCE_BASE_URL"]

        response = handler({}, None, environ=environ)

        assert response["statusCode"] == 400
        assert response["body"]["success"] is False
        assert "COMMERCE_BASE_URL" in response["body"]["error"]
        assert response["body"]["steps"] == []

    def test_invalid_parameter_is_400(self, environ):
        response = handler({"queryStringParameters": {"env": "staging"}}, None, environ=environ)

        assert response["statusCode"] == 400
        assert "export.env" in response["body"]["error"]

    def test_options_preflight(self, environ):
        response = handler({"httpMethod": "OPTIONS"}, None, environ=environ)

        assert response["statusCode"] == 200
        assert "Access-Control-Allow-Methods" in response["headers"]

    def test_unexpected_error_is_500(self, environ, monkeypatch):
        async def explode(self):
            raise RuntimeError("boom")

        monkeypatch.setattr("catalog_export.orchestrator.PipelineOrchestrator.run", explode)

        response = handler({}, None, environ=environ)

        assert response["statusCode"] == 500
        assert response["body"]["error"] == "RuntimeError: boom"


class TestFileHandlers:
    """Tests for browse, download and delete."""

    @pytest.fixture
    def files(self, tmp_path):
        return FilesStorage(root=str(tmp_path), action_base_url="https://actions.example.com")

    def test_browse(self, environ, files):
        asyncio.run(files.write("products.csv", CSV))

        response = browse_files_handler({}, None, environ=environ)

        assert response["statusCode"] == 200
        [entry] = response["body"]["files"]
        assert entry["name"] == "products.csv"
        assert entry["size"] == len(CSV)
        assert entry["downloadUrl"] == "https://actions.example.com/download-file?fileName=products.csv"

    def test_download(self, environ, files):
        asyncio.run(files.write("products.csv", CSV))

        response = download_file_handler({"queryStringParameters": {"fileName": "products.csv"}}, None, environ=environ)

        assert response["statusCode"] == 200
        assert response["isBase64Encoded"] is True
        assert response["headers"]["Content-Type"] == "text/csv"
        assert 'filename="products.csv"' in response["headers"]["Content-Disposition"]
        assert base64.b64decode(response["body"]) == CSV

    def test_download_decompresses_gzip_objects(self, fake_s3):
        storage = S3Storage(bucket="exports", client=fake_s3)
        asyncio.run(storage.write("products.csv", gzip.compress(CSV), "text/csv", "gzip"))

        response = download_file_handler({"fileName": "products.csv"}, None, environ={}, storage=storage)

        assert base64.b64decode(response["body"]) == CSV

    def test_download_requires_file_name(self, environ):
        response = download_file_handler({}, None, environ=environ)

        assert response["statusCode"] == 400
        assert "fileName" in response["body"]["error"]

    def test_download_unknown_file(self, environ):
        response = download_file_handler({"fileName": "missing.csv"}, None, environ=environ)

        assert response["statusCode"] == 404

    def test_delete(self, environ, files, tmp_path):
        asyncio.run(files.write("products.csv", CSV))

        response = delete_file_handler({"fileName": "products.csv"}, None, environ=environ)

        assert response["statusCode"] == 200
        assert response["body"]["success"] is True
        assert not (tmp_path / "public" / "products.csv").exists()

    def test_delete_unknown_file(self, environ):
        response = delete_file_handler({"fileName": "missing.csv"}, None, environ=environ)

        assert response["statusCode"] == 404
        assert response["body"]["success"] is False

    def test_delete_requires_file_name(self, environ):
        response = delete_file_handler({"queryStringParameters": {}}, None, environ=environ)

        assert response["statusCode"] == 400
