"""Tests for the example service routes and their captured records."""

import pytest

from logtrace.api import create_app
from logtrace.config import Config


@pytest.fixture
def app(publisher):
    app = create_app(Config(service_name="users", environment="test"), publisher=publisher)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


class TestRoutes:
    def test_ping(self, client):
        resp = client.get("/ping")
        assert resp.status_code == 200
        assert resp.data == b"pong"
        assert resp.headers["Content-Type"].startswith("text/plain")

    def test_list_users(self, client):
        resp = client.get("/api/v1/users")
        assert resp.status_code == 200
        assert [u["name"] for u in resp.get_json()] == ["Alice", "Bob"]

    def test_get_user(self, client):
        resp = client.get("/api/v1/users/2")
        assert resp.get_json() == {"id": 2, "name": "Bob"}

    def test_get_missing_user(self, client):
        resp = client.get("/api/v1/users/42")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "user not found"

    def test_create_user(self, client):
        resp = client.post("/api/v1/users", json={"name": "Carol"})
        assert resp.status_code == 201
        assert resp.get_json() == {"id": 3, "name": "Carol"}
        assert client.get("/api/v1/users/3").status_code == 200

    def test_create_user_invalid(self, client, publisher):
        resp = client.post("/api/v1/users", json={"nickname": "x"})
        assert resp.status_code == 400
        assert publisher.records()[0].error == "invalid user payload"

    def test_error_route(self, client, publisher):
        resp = client.get("/api/v1/error")
        assert resp.status_code == 500
        record = publisher.records()[0]
        assert record.status == 500
        assert record.error == "example failure for error logging"


class TestCapturedRecords:
    def test_records_published_under_service_subject(self, client, publisher):
        client.get("/ping")
        client.post("/api/v1/users", json={"name": "Dave"})

        assert [subject for subject, _ in publisher.published] == ["logs.users", "logs.users"]
        ping, create = publisher.records()
        assert ping.path == "/ping"
        assert ping.response_body == "pong"
        assert create.method == "POST"
        assert create.status == 201
        assert '"Dave"' in create.request_body
        assert create.service_name == "users"
        assert create.environment == "test"

    def test_components_registered(self, app):
        components = app.config["components"]
        assert components["config"].service_name == "users"
        assert components["capture"].subject == "logs.users"
        assert app.extensions["logtrace"] is components["capture"]

    def test_default_config(self):
        app = create_app()
        assert app.config["components"]["config"].service_name == "microservice"
        assert app.test_client().get("/ping").status_code == 200
