"""Pytest fixtures and configuration."""

import json
import os
from typing import Optional

import httpx
import pytest
from botocore.exceptions import ClientError

os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"

from catalog_export.auth import AuthClient  # noqa: E402
from catalog_export.cache import CategoryMapCache, TTLCache  # noqa: E402
from catalog_export.config import (  # noqa: E402
    BatchingSettings,
    CommerceSettings,
    ExportConfig,
    SourceSettings,
    StorageSettings,
)
from catalog_export.retry import RetryPolicy  # noqa: E402

BASE_URL = "https://commerce.example.com"
REST = "/rest/V1"


def make_product(index: int, category_ids: Optional[list[int]] = None) -> dict:
    """Products endpoint item for SKU-<index>."""
    category_ids = [10, 11] if category_ids is None else category_ids
    return {
        "id": index,
        "sku": f"SKU-{index:03d}",
        "name": f"Product {index}",
        "price": 10.0 + index,
        "status": 1,
        "type_id": "simple",
        "attribute_set_id": 4,
        "weight": 1.5,
        "created_at": "2024-01-01 00:00:00",
        "updated_at": "2024-02-01 00:00:00",
        "extension_attributes": {
            "category_links": [{"position": 0, "category_id": str(cid)} for cid in category_ids],
        },
        "media_gallery_entries": [
            {"file": f"/p/{index}/side.jpg", "position": 2, "types": [], "disabled": False},
            {"file": f"/p/{index}/main.jpg", "position": 1, "types": ["image", "small_image"], "disabled": False},
        ],
        "custom_attributes": [
            {"attribute_code": "url_key", "value": f"product-{index}"},
            {"attribute_code": "description", "value": f"<p>Product {index}, \"best\"</p>"},
        ],
    }


DEFAULT_CATEGORIES = {
    1: {"id": 1, "parent_id": 0, "name": "Root Catalog", "level": 0, "path": "1"},
    2: {"id": 2, "parent_id": 1, "name": "Default Category", "level": 1, "path": "1/2"},
    10: {"id": 10, "parent_id": 2, "name": "Women", "level": 2, "path": "1/2/10"},
    11: {"id": 11, "parent_id": 10, "name": "Dresses", "level": 3, "path": "1/2/10/11"},
    12: {"id": 12, "parent_id": 2, "name": "Men", "level": 2, "path": "1/2/12"},
}


def _filter_values(params: httpx.QueryParams) -> list[str]:
    raw = params.get("searchCriteria[filter_groups][0][filters][0][value]", "")
    return [v for v in raw.split(",") if v]


class FakeCommerce:
    """
    In-process Commerce REST API served through httpx.MockTransport.

    Failure knobs:
        fail_pages: product pages that always answer 500
        fail_inventory_skus: any inventory batch containing one of these answers 500
        fail_categories: category batches containing one of these ids answer 500
        reject_tokens: bearer tokens answered with 401
        unauthorized_paths: endpoints answering 401 whatever the token
        token_status: status returned by the token endpoint
    """

    def __init__(self, products: Optional[list[dict]] = None):
        self.products = products if products is not None else [make_product(i) for i in range(1, 6)]
        self.categories = dict(DEFAULT_CATEGORIES)
        self.inventory: dict[str, list[dict]] = {
            p["sku"]: [{"sku": p["sku"], "source_code": "default", "quantity": float(p["id"]), "status": 1}]
            for p in self.products
            if p.get("sku")
        }
        self.fail_pages: set[int] = set()
        self.fail_inventory_skus: set[str] = set()
        self.fail_categories: set[int] = set()
        self.reject_tokens: set[str] = set()
        self.unauthorized_paths: set[str] = set()
        self.token_status = 200
        self.token_counter = 0
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, path_suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(path_suffix))

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if not path.startswith(REST):
            return httpx.Response(404, json={"message": "not found"})
        path = path[len(REST):]

        if path == "/integration/admin/token":
            return self._token(request)

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if not token or token in self.reject_tokens or path in self.unauthorized_paths:
            return httpx.Response(401, json={"message": "The consumer isn't authorized to access %resources."})

        if path == "/products":
            return self._products(request.url.params)
        if path == "/inventory/source-items":
            return self._source_items(request.url.params)
        if path == "/categories/list":
            return self._categories(request.url.params)
        return httpx.Response(404, json={"message": "Request does not match any route."})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"message": "Invalid login or password."})
        body = json.loads(request.content)
        if body.get("username") != "admin" or body.get("password") != "secret":
            return httpx.Response(401, json={"message": "Invalid login or password."})
        self.token_counter += 1
        return httpx.Response(200, json=f"token-{self.token_counter}")

    def _products(self, params: httpx.QueryParams) -> httpx.Response:
        page_size = int(params.get("searchCriteria[pageSize]", "20"))
        page = int(params.get("searchCriteria[currentPage]", "1"))
        if page in self.fail_pages:
            return httpx.Response(500, json={"message": "Internal Error"})
        start = (page - 1) * page_size
        items = self.products[start:start + page_size]
        return httpx.Response(200, json={"items": items, "total_count": len(self.products)})

    def _source_items(self, params: httpx.QueryParams) -> httpx.Response:
        skus = _filter_values(params)
        if self.fail_inventory_skus.intersection(skus):
            return httpx.Response(503, json={"message": "Service Unavailable"})
        items = [item for sku in skus for item in self.inventory.get(sku, [])]
        page_size = int(params.get("searchCriteria[pageSize]", "20"))
        page = int(params.get("searchCriteria[currentPage]", "1"))
        start = (page - 1) * page_size
        return httpx.Response(200, json={"items": items[start:start + page_size], "total_count": len(items)})

    def _categories(self, params: httpx.QueryParams) -> httpx.Response:
        ids = [int(v) for v in _filter_values(params)]
        if self.fail_categories.intersection(ids):
            return httpx.Response(500, json={"message": "Internal Error"})
        items = [self.categories[cid] for cid in ids if cid in self.categories]
        return httpx.Response(200, json={"items": items, "total_count": len(items)})


class FakeS3Client:
    """In-memory stand-in for the boto3 S3 client methods the storage layer uses."""

    def __init__(self):
        self.objects: dict[tuple[str, str], dict] = {}
        self.fail_next: list[str] = []
        self.calls: list[str] = []

    def _maybe_fail(self, operation: str):
        self.calls.append(operation)
        if self.fail_next and self.fail_next[0] == operation:
            self.fail_next.pop(0)
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "Please reduce your request rate."}}, operation)

    def _missing(self, operation: str):
        raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."}}, operation)

    def put_object(self, Bucket, Key, Body, ContentType=None, ContentEncoding=None):
        self._maybe_fail("PutObject")
        self.objects[(Bucket, Key)] = {
            "Body": bytes(Body),
            "ContentType": ContentType,
            "ContentEncoding": ContentEncoding,
        }
        return {"ETag": '"etag"'}

    def get_object(self, Bucket, Key):
        self._maybe_fail("GetObject")
        obj = self.objects.get((Bucket, Key))
        if obj is None:
            self._missing("GetObject")
        return {"Body": _Body(obj["Body"]), "ContentEncoding": obj["ContentEncoding"]}

    def head_object(self, Bucket, Key):
        self._maybe_fail("HeadObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)]["Body"])}

    def delete_object(self, Bucket, Key):
        self._maybe_fail("DeleteObject")
        self.objects.pop((Bucket, Key), None)
        return {}

    def list_objects_v2(self, Bucket, Prefix="", ContinuationToken=None):
        self._maybe_fail("ListObjectsV2")
        keys = sorted(k for (b, k) in self.objects if b == Bucket and k.startswith(Prefix))
        return {
            "Contents": [{"Key": k, "Size": len(self.objects[(Bucket, k)]["Body"])} for k in keys],
            "IsTruncated": False,
        }

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


class _Body:
    def __init__(self, data: bytes):
        self._data = data

    def read(self) -> bytes:
        return self._data


def zero_delay_sources() -> dict[str, SourceSettings]:
    return {
        "products": SourceSettings(retry_delay=0),
        "categories": SourceSettings(retry_delay=0),
        "inventory": SourceSettings(
            max_attempts=5,
            retry_delay=0,
            max_connections=15,
            max_keepalive_connections=8,
            timeout=15.0,
        ),
    }


def build_config(**sections) -> ExportConfig:
    """ExportConfig pointing at the fake Commerce with retry and dispatch delays disabled."""
    sections.setdefault(
        "commerce",
        CommerceSettings(base_url=BASE_URL, username="admin", password="secret"),
    )
    sections.setdefault("batching", BatchingSettings(request_delay=0))
    sections.setdefault("sources", zero_delay_sources())
    return ExportConfig(**sections)


@pytest.fixture
def commerce():
    """Fake Commerce instance with five products."""
    return FakeCommerce()


@pytest.fixture
def transport(commerce):
    return commerce.transport()


@pytest.fixture
def config():
    return build_config()


@pytest.fixture
def token_cache():
    return TTLCache("test-token", default_ttl=3600)


@pytest.fixture
def category_cache():
    return CategoryMapCache()


@pytest.fixture
def auth_client(config, transport, token_cache):
    return AuthClient(config.commerce, cache=token_cache, transport=transport, retry_delay=0)


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def files_config(tmp_path):
    """Production config storing into a temporary managed files root."""
    return build_config(
        storage=StorageSettings(provider="files", files_root=str(tmp_path / "files")),
    )


@pytest.fixture
def no_wait_policy():
    return RetryPolicy(max_attempts=3, base_delay=0)
