"""
Pytest configuration and shared fixtures for the test suite.
"""

import copy
import json

import pytest

from src.api_healer.core.models import TestError, TestResult


OLD_SPEC = {
    "openapi": "3.0.3",
    "info": {"title": "Products API", "version": "1.0.0"},
    "paths": {
        "/products": {
            "post": {
                "operationId": "createProduct",
                "requestBody": {
                    "required": True,
                    "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Product"}}},
                },
                "responses": {"200": {"description": "Created product"}},
            }
        },
        "/products/{id}": {
            "get": {
                "operationId": "getProduct",
                "parameters": [
                    {"name": "id", "in": "path", "required": True, "schema": {"type": "integer"}}
                ],
                "responses": {
                    "200": {
                        "description": "The product",
                        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Product"}}},
                    }
                },
            }
        },
        "/users/{id}": {
            "get": {
                "operationId": "getUser",
                "parameters": [
                    {"name": "id", "in": "path", "required": True, "schema": {"type": "integer"}}
                ],
                "responses": {"200": {"description": "The user"}},
            }
        },
    },
    "components": {
        "schemas": {
            "Product": {
                "type": "object",
                "required": ["product_name"],
                "properties": {
                    "id": {"type": "integer"},
                    "product_name": {"type": "string"},
                    "price": {"type": "number"},
                },
            }
        }
    },
}


def _new_spec():
    spec = copy.deepcopy(OLD_SPEC)
    spec["info"]["version"] = "2.0.0"
    spec["paths"]["/products"]["post"]["responses"] = {"201": {"description": "Created product"}}
    spec["paths"]["/v2/users/{id}"] = spec["paths"].pop("/users/{id}")
    spec["components"]["schemas"]["Product"] = {
        "type": "object",
        "required": ["productName"],
        "properties": {
            "id": {"type": "integer"},
            "productName": {"type": "string"},
            "price": {"type": "number"},
        },
    }
    return spec


NEW_SPEC = _new_spec()

PRODUCT_TEST_CODE = """import { test, expect } from '@playwright/test';

test('get product', async ({ request }) => {
  const response = await request.get('/products/42');
  expect(response.status()).toBe(200);
  const body = await response.json();
  expect(body.product_name).toBe('Widget');
});
"""

CREATE_PRODUCT_TEST_CODE = """import { test, expect } from '@playwright/test';

test('create product', async ({ request }) => {
  const response = await request.post('/products', { data: { product_name: 'Widget', price: 5 } });
  expect(response.status()).toBe(200);
});
"""

TIMEOUT_TEST_CODE = """import { test, expect } from '@playwright/test';

test('slow report', async ({ request }) => {
  test.setTimeout(5000);
  const response = await request.get('/reports/daily', { timeout: 5000 });
  expect(response.ok()).toBeTruthy();
});
"""


@pytest.fixture
def old_spec():
    """Version 1.0.0 of the products API."""
    return copy.deepcopy(OLD_SPEC)


@pytest.fixture
def new_spec():
    """Version 2.0.0: product_name renamed, POST returns 201, /users moved under /v2."""
    return copy.deepcopy(NEW_SPEC)


@pytest.fixture
def spec_files(tmp_path, old_spec, new_spec):
    """Write the two spec versions to disk, old as JSON and new as YAML."""
    import yaml

    old_path = tmp_path / "openapi-v1.json"
    new_path = tmp_path / "openapi-v2.yaml"
    old_path.write_text(json.dumps(old_spec), encoding="utf-8")
    new_path.write_text(yaml.safe_dump(new_spec), encoding="utf-8")
    return old_path, new_path


@pytest.fixture
def make_test_result():
    """Factory for failed executor results."""
    def _make(message, test_name="get product", test_path="tests/products.spec.ts",
              status="failed", stack=None):
        return TestResult(
            test_path=test_path,
            test_name=test_name,
            status=status,
            duration=1.5,
            error=TestError(message=message, stack=stack) if message is not None else None,
        )
    return _make


@pytest.fixture
def product_test_code():
    return PRODUCT_TEST_CODE


@pytest.fixture
def create_product_test_code():
    return CREATE_PRODUCT_TEST_CODE


@pytest.fixture
def timeout_test_code():
    return TIMEOUT_TEST_CODE


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Set up logging for tests."""
    import logging
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
