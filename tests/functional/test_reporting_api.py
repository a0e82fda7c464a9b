"""
API tests for the reporting module.
Tests schema discovery, preview and aggregated compilation/execution, derived-field authoring and request logging.
"""

import pytest
from fastapi.testclient import TestClient

from reportql.logging.models import Log

ORDER_CUSTOMER = {
    "id": "order-customer",
    "left_entity": "Order",
    "left_field": "customerId",
    "right_entity": "Customer",
    "right_field": "id",
    "kind": "left",
}


@pytest.fixture
def preview_request():
    return {
        "entities": ["Order", "Customer"],
        "fields": {"Order": ["id", "total"], "Customer": ["name"]},
        "joins": [ORDER_CUSTOMER],
    }


@pytest.fixture
def revenue_request():
    return {
        "entities": ["Order", "Customer"],
        "metrics": [{"entity": "Order", "field": "total", "aggregation": "sum", "alias": "revenue"}],
        "dimensions": [{"entity": "Customer", "field": "name", "alias": "customer"}],
        "filters": [{"entity": "Order", "field": "status", "operator": "in", "value": ["paid", "open"]}],
        "joins": [ORDER_CUSTOMER],
        "order_by": [{"alias": "revenue", "direction": "desc"}],
    }


class TestSchemaEndpoints:
    """Schema discovery"""

    def test_describe_schema(self, client: TestClient):
        response = client.get("/api/reporting/schema")
        assert response.status_code == 200

        entities = response.json()
        assert [entity["id"] for entity in entities] == ["Customer", "Order", "Vendor"]

        order = entities[1]
        assert order["table_name"] == "orders"
        assert order["description"] == "Order (orders)"
        assert order["primary_keys"] == ["id"]
        customer_id = next(f for f in order["fields"] if f["name"] == "customerId")
        assert customer_id["column_name"] == "customer_id"
        assert customer_id["references"] == {"entity": "Customer", "key": "id"}
        assert {a["alias"]: a["kind"] for a in order["associations"]} == {
            "customer": "belongs_to",
            "vendor": "belongs_to",
        }

    def test_refresh_schema(self, client: TestClient):
        response = client.post("/api/reporting/schema/refresh")
        assert response.status_code == 200
        assert len(response.json()) == 3


class TestPreviewEndpoints:
    """Flat projection compile and run"""

    def test_compile_preview(self, client: TestClient, preview_request):
        response = client.post("/api/reporting/preview/compile", json=preview_request)
        assert response.status_code == 200

        compiled = response.json()
        assert compiled["sql"] == (
            'SELECT m0."id" AS "order__id", m0."total" AS "order__total", m1."name" AS "customer__name"\n'
            'FROM "orders" m0\n'
            'LEFT JOIN "customers" m1 ON m0."customer_id" = m1."id"\n'
            "LIMIT 200"
        )
        assert compiled["columns"] == ["order__id", "order__total", "customer__name"]
        assert compiled["limit"] == 200
        assert len(compiled["query_hash"]) == 64
        assert compiled["formatted_sql"].startswith("SELECT")

    def test_run_preview(self, client: TestClient, preview_request):
        response = client.post("/api/reporting/preview/run", json=preview_request)
        assert response.status_code == 200

        result = response.json()
        assert result["metadata"]["row_count"] == 3
        names = sorted(row["customer__name"] for row in result["rows"])
        assert names == ["Ada", "Ada", "Grace"]

    def test_preview_with_derived_field_text(self, client: TestClient, preview_request):
        preview_request["derived_fields"] = [
            {"id": "net", "alias": "net_total", "expression": "Order.total - coalesce(Order.discount, 0)"}
        ]

        response = client.post("/api/reporting/preview/run", json=preview_request)
        assert response.status_code == 200

        by_id = {row["order__id"]: row["net_total"] for row in response.json()["rows"]}
        assert by_id == {1: 90.0, 2: 50.0, 3: 70.0}

    def test_unknown_entity(self, client: TestClient):
        response = client.post(
            "/api/reporting/preview/compile", json={"entities": ["Invoice"], "fields": {"Invoice": ["id"]}}
        )
        assert response.status_code == 404
        assert response.json()["kind"] == "unknown_entity"
        assert response.json()["details"] == {"entity": "Invoice"}

    def test_empty_projection(self, client: TestClient):
        response = client.post(
            "/api/reporting/preview/compile", json={"entities": ["Order"], "fields": {"Order": ["tax"]}}
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "empty_projection"

    def test_disconnected_entity(self, client: TestClient):
        response = client.post(
            "/api/reporting/preview/compile",
            json={"entities": ["Order", "Vendor"], "fields": {"Order": ["id"]}},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["kind"] == "join_unresolved"
        assert body["details"]["unresolved"][0]["reason"] == "disconnected_entity"

    def test_unsafe_raw_filter(self, client: TestClient, preview_request):
        preview_request["filters"] = ["1 = 1; DELETE FROM orders"]

        response = client.post("/api/reporting/preview/compile", json=preview_request)
        assert response.status_code == 400
        assert response.json()["kind"] == "unsafe_filter_fragment"

    def test_invalid_derived_field(self, client: TestClient, preview_request):
        preview_request["derived_fields"] = [{"id": "bad", "expression": "sqrt(Order.total)"}]

        response = client.post("/api/reporting/preview/compile", json=preview_request)
        assert response.status_code == 400
        assert response.json()["kind"] == "invalid_derived_field"
        assert response.json()["details"]["position"] == 0

    def test_request_validation_error(self, client: TestClient):
        response = client.post("/api/reporting/preview/compile", json={"fields": {}})
        assert response.status_code == 422


class TestAggregatedQueryEndpoints:
    """Aggregated compile and run"""

    def test_compile_query(self, client: TestClient, revenue_request):
        response = client.post("/api/reporting/query/compile", json=revenue_request)
        assert response.status_code == 200

        compiled = response.json()
        assert 'SUM(m0."total") AS "revenue"' in compiled["sql"]
        assert 'GROUP BY m1."name"' in compiled["sql"]
        assert compiled["parameters"] == {"filter_0": ["paid", "open"]}
        assert compiled["limit"] == 500

    def test_date_bucket_dimension(self, client: TestClient):
        response = client.post(
            "/api/reporting/query/compile",
            json={
                "entities": ["Order"],
                "metrics": [{"entity": "Order", "field": "total", "aggregation": "sum", "alias": "revenue"}],
                "dimensions": [{"entity": "Order", "field": "createdAt", "bucket": "month", "alias": "month"}],
            },
        )
        assert response.status_code == 200

        sql = response.json()["sql"]
        assert "date_trunc('month', m0.\"created_at\") AS \"month\"" in sql
        assert "GROUP BY date_trunc('month', m0.\"created_at\")" in sql

    def test_run_query_is_cached(self, client: TestClient, revenue_request):
        first = client.post("/api/reporting/query/run", json=revenue_request)
        second = client.post("/api/reporting/query/run", json=revenue_request)
        assert first.status_code == 200
        assert second.status_code == 200

        assert first.json()["rows"] == [
            {"customer": "Ada", "revenue": 150.0},
            {"customer": "Grace", "revenue": 75.5},
        ]
        assert "cached" not in first.json()["metadata"]
        assert second.json()["metadata"]["cached"] is True
        assert second.json()["rows"] == first.json()["rows"]

    def test_run_query_bypassing_cache(self, client: TestClient, revenue_request):
        client.post("/api/reporting/query/run", json=revenue_request)
        revenue_request["use_cache"] = False

        response = client.post("/api/reporting/query/run", json=revenue_request)
        assert response.status_code == 200
        assert "cached" not in response.json()["metadata"]

    def test_between_without_upper_bound(self, client: TestClient, revenue_request):
        revenue_request["filters"] = [
            {"entity": "Order", "field": "createdAt", "operator": "between", "value": {"from": "2024-01-01"}}
        ]

        response = client.post("/api/reporting/query/compile", json=revenue_request)
        assert response.status_code == 400
        body = response.json()
        assert body["kind"] == "invalid_filter_value"
        assert body["details"]["filter_index"] == 0

    def test_unsupported_aggregation(self, client: TestClient, revenue_request):
        revenue_request["metrics"][0]["aggregation"] = "median"

        response = client.post("/api/reporting/query/compile", json=revenue_request)
        assert response.status_code == 400
        assert response.json()["kind"] == "unsupported_operator"

    def test_stale_derived_field(self, client: TestClient, revenue_request):
        revenue_request["derived_fields"] = [
            {
                "id": "margin",
                "kind": "aggregate",
                "expression_ast": {
                    "type": "binary",
                    "operator": "-",
                    "left": {"type": "column", "modelId": "Order", "fieldId": "total"},
                    "right": {"type": "column", "modelId": "Vendor", "fieldId": "id"},
                },
            }
        ]

        response = client.post("/api/reporting/query/compile", json=revenue_request)
        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "derived_field_stale"
        assert [(issue["kind"], issue["model"]) for issue in body["details"]["issues"]] == [
            ("missing_model", "Vendor")
        ]


class TestDerivedFieldEndpoints:
    """Derived field authoring helpers"""

    def test_normalize_formula(self, client: TestClient):
        response = client.post(
            "/api/reporting/derived-fields/normalize", json={"expression": "Order.total / Invoice.amount"}
        )
        assert response.status_code == 200

        body = response.json()
        assert body["referenced_models"] == ["Order", "Invoice"]
        assert body["referenced_fields"] == {"Invoice": ["amount"], "Order": ["total"]}
        assert body["join_dependencies"] == [["Invoice", "Order"]]
        assert body["missing_models"] == ["Invoice"]
        assert body["missing_fields"] == []
        assert body["expression_ast"]["type"] == "binary"

    def test_normalize_reports_missing_fields(self, client: TestClient):
        response = client.post(
            "/api/reporting/derived-fields/normalize",
            json={"expression_ast": {"type": "column", "modelId": "Order", "fieldId": "tax"}},
        )
        assert response.status_code == 200
        assert response.json()["missing_fields"] == ["Order.tax"]

    def test_normalize_rejects_malformed_tree(self, client: TestClient):
        response = client.post(
            "/api/reporting/derived-fields/normalize",
            json={"expression_ast": {"type": "function", "name": "sqrt", "args": []}},
        )
        assert response.status_code == 400

    def test_normalize_requires_an_expression(self, client: TestClient):
        response = client.post("/api/reporting/derived-fields/normalize", json={})
        assert response.status_code == 400

    def test_signature_ignores_orientation(self, client: TestClient):
        reversed_edge = {
            "left_entity": "Customer",
            "left_field": "id",
            "right_entity": "Order",
            "right_field": "customerId",
        }
        first = client.post(
            "/api/reporting/derived-fields/signature",
            json={"entities": ["Order", "Customer"], "joins": [ORDER_CUSTOMER]},
        )
        second = client.post(
            "/api/reporting/derived-fields/signature",
            json={"entities": ["Customer", "Order"], "joins": [reversed_edge]},
        )
        assert first.status_code == 200
        assert first.json()["model_graph_signature"] == second.json()["model_graph_signature"]


class TestRequestLogging:
    """Request log rows written by the logging middleware"""

    def test_successful_request_is_logged(self, client: TestClient, log_session_factory):
        client.get("/api/reporting/schema")

        with log_session_factory() as session:
            logs = session.query(Log).all()
        assert len(logs) == 1
        assert logs[0].method == "GET"
        assert logs[0].path == "/api/reporting/schema"
        assert logs[0].status_code == 200
        assert logs[0].error_kind is None

    def test_compilation_error_kind_is_logged(self, client: TestClient, log_session_factory):
        client.post("/api/reporting/preview/compile", json={"entities": ["Invoice"]})

        with log_session_factory() as session:
            log = session.query(Log).one()
        assert log.status_code == 404
        assert log.error_kind == "unknown_entity"
        assert '"Invoice"' in log.request_body
