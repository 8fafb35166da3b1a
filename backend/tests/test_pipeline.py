"""
Sanskriti Setu API — Pipeline Assembly Tests
==============================================

What:  Stage ordering, route table rules, and the middleware stages seen
       through HTTP (CORS gate, body decoder, compression, access log).
"""

import asyncio
import dataclasses
import logging
import sys
import types

import pytest
from fastapi import APIRouter, Request
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import PlainTextResponse

from sanskriti_api.exceptions import PipelineOrderError, RouteTableError
from sanskriti_api.middleware import (
    AccessLogMiddleware,
    BodyDecoderMiddleware,
    CorsGateMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from sanskriti_api.pipeline import (
    PIPELINE_ORDER,
    Stage,
    StageKind,
    StageName,
    declare_stages,
    validate_stage_order,
)
from sanskriti_api.routes import (
    FEATURE_PREFIXES,
    RouteEntry,
    RouteTable,
    load_route_table,
)


def _echo_router() -> APIRouter:
    router = APIRouter()

    @router.post("/echo")
    async def echo(request: Request):
        body = getattr(request.state, "body", None)
        if hasattr(body, "multi_items"):
            body = dict(body.multi_items())
        return {"decoded": body, "raw_length": len(await request.body())}

    @router.get("/big")
    async def big():
        return {"items": ["namaste"] * 500}

    return router


def _text_app(text: str):
    async def app(scope, receive, send):
        await PlainTextResponse(text)(scope, receive, send)

    return app


class TestStageOrder:
    def test_declared_order_is_fixed(self, make_config):
        names = [stage.name.value for stage in declare_stages(make_config())]
        assert names == [
            "security_headers",
            "compression",
            "access_log",
            "rate_limit",
            "cors",
            "body_decoder",
            "static_assets",
            "route_dispatch",
            "spa_fallback",
            "error_responder",
            "not_found",
        ]
        assert tuple(StageName(n) for n in names) == PIPELINE_ORDER

    def test_reordered_stages_rejected(self, make_config):
        stages = list(declare_stages(make_config()))
        stages[3], stages[4] = stages[4], stages[3]  # CORS before rate limiting
        with pytest.raises(PipelineOrderError, match="out of order"):
            validate_stage_order(stages)

    def test_missing_stage_rejected(self, make_config):
        stages = [s for s in declare_stages(make_config()) if s.name is not StageName.NOT_FOUND]
        with pytest.raises(PipelineOrderError):
            validate_stage_order(stages)

    def test_not_found_is_strictly_last(self, make_config):
        stages = declare_stages(make_config())
        assert stages[-1] == Stage(StageName.NOT_FOUND, StageKind.TERMINAL)
        assert stages[-2].name is StageName.ERROR_RESPONDER

    def test_spa_fallback_only_active_in_production(self, make_pipeline):
        dev = make_pipeline(environment="development")
        prod = make_pipeline(environment="production")
        assert StageName.SPA_FALLBACK not in dev.active_stages()
        assert StageName.SPA_FALLBACK in prod.active_stages()
        assert len(dev.stages) == len(prod.stages) == len(PIPELINE_ORDER)

    def test_app_middleware_follows_declared_order(self, make_pipeline):
        pipeline = make_pipeline()
        classes = [m.cls for m in pipeline.app.user_middleware]
        assert classes == [
            SecurityHeadersMiddleware,
            GZipMiddleware,
            AccessLogMiddleware,
            RateLimitMiddleware,
            CorsGateMiddleware,
            BodyDecoderMiddleware,
        ]

    def test_pipeline_cannot_be_reordered(self, make_pipeline):
        pipeline = make_pipeline()
        with pytest.raises(dataclasses.FrozenInstanceError):
            pipeline.stages = tuple(reversed(pipeline.stages))
        assert isinstance(pipeline.stages, tuple)

    @pytest.mark.asyncio
    async def test_middleware_cannot_be_added_once_serving(self, make_pipeline, make_client):
        pipeline = make_pipeline()
        await make_client(pipeline).get("/api/health")
        with pytest.raises(RuntimeError):
            pipeline.app.add_middleware(GZipMiddleware)


class TestRouteTable:
    def test_duplicate_prefix_rejected(self):
        with pytest.raises(RouteTableError, match="Duplicate"):
            RouteTable.of(("/api/chat", APIRouter()), ("/api/chat", APIRouter()))

    @pytest.mark.parametrize("prefix", ["api/chat", "/", "/api/chat/"])
    def test_malformed_prefix_rejected(self, prefix):
        with pytest.raises(RouteTableError):
            RouteTable.of((prefix, APIRouter()))

    def test_dispatch_order_longest_prefix_first(self):
        a, b, c, d = (object() for _ in range(4))
        table = RouteTable.of(
            ("/api/chat", a),
            ("/api/chat/rooms", b),
            ("/api/auth", c),
            ("/api/users", d),
        )
        assert [e.prefix for e in table.dispatch_order()] == [
            "/api/chat/rooms",
            "/api/users",
            "/api/chat",  # ties keep registration order
            "/api/auth",
        ]

    def test_dispatch_order_is_stable_for_equal_lengths(self):
        table = RouteTable.of(("/api/auth", 1), ("/api/chat", 2), ("/api/xyz1", 3))
        assert [e.handler for e in table.dispatch_order()] == [1, 2, 3]

    def test_feature_route_cannot_claim_core_prefix(self, make_pipeline):
        with pytest.raises(RouteTableError, match="core prefixes"):
            make_pipeline(routes=RouteTable.of(("/api/health", APIRouter())))

    def test_load_route_table_imports_handlers(self, monkeypatch):
        module = types.ModuleType("sanskriti_test_features")
        module.auth_router = APIRouter()
        module.chat_router = APIRouter()
        monkeypatch.setitem(sys.modules, "sanskriti_test_features", module)

        table = load_route_table(
            {
                "/api/chat": "sanskriti_test_features:chat_router",
                "/api/auth": "sanskriti_test_features:auth_router",
            }
        )
        # entries follow the fixed feature table order
        assert table.prefixes() == ("/api/auth", "/api/chat")
        assert table.entries[0] == RouteEntry("/api/auth", module.auth_router)

    def test_load_route_table_rejects_unknown_prefix(self):
        with pytest.raises(RouteTableError, match="Unknown feature prefixes"):
            load_route_table({"/api/admin": "os:path"})

    @pytest.mark.parametrize("target", ["no_colon", ":attr", "module:"])
    def test_load_route_table_rejects_bad_target(self, target):
        with pytest.raises(RouteTableError):
            load_route_table({FEATURE_PREFIXES[0]: target})

    def test_load_route_table_rejects_missing_attribute(self):
        with pytest.raises(RouteTableError, match="no attribute"):
            load_route_table({"/api/users": "sanskriti_api.routes:does_not_exist"})


class TestRouteDispatch:
    @pytest.mark.asyncio
    async def test_longest_prefix_wins_over_registration_order(self, make_pipeline, make_client):
        routes = RouteTable.of(
            ("/api/chat", _text_app("chat")),
            ("/api/chat/rooms", _text_app("rooms")),
        )
        client = make_client(make_pipeline(routes=routes))

        assert (await client.get("/api/chat/rooms/42")).text == "rooms"
        assert (await client.get("/api/chat/messages")).text == "chat"

    @pytest.mark.asyncio
    async def test_api_router_included_under_prefix(self, make_pipeline, make_client):
        client = make_client(make_pipeline(routes=RouteTable.of(("/api/users", _echo_router()))))
        response = await client.post("/api/users/echo", json={"name": "Meera"})
        assert response.status_code == 200
        assert response.json()["decoded"] == {"name": "Meera"}


class TestBodyDecoder:
    @pytest.fixture
    def client(self, make_pipeline, make_client):
        pipeline = make_pipeline(
            routes=RouteTable.of(("/api/cultural", _echo_router())),
            body_limit_bytes=1024,
        )
        return make_client(pipeline)

    @pytest.mark.asyncio
    async def test_json_body_decoded_and_replayed(self, client):
        response = await client.post("/api/cultural/echo", json={"festival": "Onam"})
        body = response.json()
        assert body["decoded"] == {"festival": "Onam"}
        assert body["raw_length"] > 0

    @pytest.mark.asyncio
    async def test_form_body_decoded(self, client):
        response = await client.post(
            "/api/cultural/echo", data={"region": "Kerala", "art": "Kathakali"}
        )
        assert response.json()["decoded"] == {"region": "Kerala", "art": "Kathakali"}

    @pytest.mark.asyncio
    async def test_oversize_body_rejected_with_413(self, client):
        response = await client.post(
            "/api/cultural/echo",
            content=b'{"x": "' + b"a" * 2048 + b'"}',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["message"] == "Request entity too large"
        assert response.json()["details"] == {"limit": 1024}

    @pytest.mark.asyncio
    async def test_oversize_form_rejected_with_413(self, client):
        response = await client.post("/api/cultural/echo", data={"story": "x" * 4096})
        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_malformed_json_rejected_with_400(self, client):
        response = await client.post(
            "/api/cultural/echo",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Request body is not valid JSON"

    @pytest.mark.asyncio
    async def test_json_scalar_rejected(self, client):
        response = await client.post(
            "/api/cultural/echo",
            content=b'"just a string"',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_other_content_types_stream_through(self, client):
        response = await client.post(
            "/api/cultural/echo",
            content=b"z" * 4096,
            headers={"content-type": "application/octet-stream"},
        )
        assert response.status_code == 200
        assert response.json() == {"decoded": None, "raw_length": 4096}


class TestCorsGate:
    @pytest.mark.asyncio
    async def test_allowed_origin_echoed_with_credentials(self, make_pipeline, make_client):
        client = make_client(make_pipeline())
        response = await client.get("/api/health", headers={"Origin": "http://localhost:3000"})
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert response.headers["access-control-allow-credentials"] == "true"
        assert "Origin" in response.headers["vary"]

    @pytest.mark.asyncio
    async def test_foreign_origin_processed_without_permissive_headers(
        self, make_pipeline, make_client
    ):
        client = make_client(make_pipeline())
        response = await client.get("/api/health", headers={"Origin": "https://evil.example"})
        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers
        assert "access-control-allow-credentials" not in response.headers

    @pytest.mark.asyncio
    async def test_preflight_answered_before_routing(self, make_pipeline, make_client):
        client = make_client(make_pipeline())
        response = await client.options(
            "/api/matches/suggestions",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type,authorization",
            },
        )
        assert response.status_code == 204
        assert response.headers["access-control-allow-methods"] == "GET,HEAD,PUT,PATCH,POST,DELETE"
        assert response.headers["access-control-allow-headers"] == "content-type,authorization"

    @pytest.mark.asyncio
    async def test_preflight_from_foreign_origin_gets_no_grant(self, make_pipeline, make_client):
        client = make_client(make_pipeline())
        response = await client.options(
            "/api/auth/login",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 204
        assert "access-control-allow-origin" not in response.headers
        assert "access-control-allow-methods" not in response.headers


class TestCompressionAndAccessLog:
    @pytest.mark.asyncio
    async def test_large_responses_gzipped(self, make_pipeline, make_client):
        client = make_client(make_pipeline(routes=RouteTable.of(("/api/chat", _echo_router()))))
        response = await client.get("/api/chat/big", headers={"Accept-Encoding": "gzip"})
        assert response.headers["content-encoding"] == "gzip"
        assert len(response.json()["items"]) == 500

    @pytest.mark.asyncio
    async def test_small_responses_not_gzipped(self, make_pipeline, make_client):
        client = make_client(make_pipeline())
        response = await client.get("/api/health", headers={"Accept-Encoding": "gzip"})
        assert "content-encoding" not in response.headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/api/health", "/api/unknown"])
    async def test_threshold_applies_through_every_inner_stage(
        self, make_pipeline, make_client, path
    ):
        """Headers added by the access log, limiter and CORS stages keep small bodies plain."""
        client = make_client(make_pipeline())
        response = await client.get(
            path,
            headers={"Accept-Encoding": "gzip", "Origin": "http://localhost:3000"},
        )
        assert "content-encoding" not in response.headers
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert "x-ratelimit-limit" in response.headers
        assert "x-request-id" in response.headers
        assert int(response.headers["content-length"]) == len(response.content)

    @pytest.mark.asyncio
    async def test_access_log_uses_combined_format(self, make_pipeline, make_client, caplog):
        client = make_client(make_pipeline())
        with caplog.at_level(logging.INFO, logger="sanskriti.access"):
            await client.get("/api/health?probe=1", headers={"User-Agent": "probe/1.0"})

        lines = [r.getMessage() for r in caplog.records if r.name == "sanskriti.access"]
        assert len(lines) == 1
        assert lines[0].startswith("203.0.113.7 - - [")
        assert '"GET /api/health?probe=1 HTTP/1.1" 200' in lines[0]
        assert lines[0].endswith('"-" "probe/1.0"')

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, make_pipeline, make_client):
        client = make_client(make_pipeline())
        response = await client.get("/api/health", headers={"X-Request-ID": "trace-123"})
        assert response.headers["x-request-id"] == "trace-123"

        generated = await client.get("/api/health")
        assert len(generated.headers["x-request-id"]) == 8


class TestLifespan:
    @pytest.mark.asyncio
    async def test_startup_creates_uploads_and_connects_in_background(
        self, make_pipeline, fake_mongo, tmp_path
    ):
        uploads = tmp_path / "fresh-uploads"
        pipeline = make_pipeline(uploads_dir=uploads)
        app = pipeline.app

        async with app.router.lifespan_context(app):
            assert uploads.is_dir()
            await pipeline.tracker.connection_task
            assert pipeline.tracker.current_state().status == "connected"

        fake_mongo.clients[0].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_startup_does_not_wait_for_dependency(self, make_pipeline, fake_mongo):
        fake_mongo.ping_gate = asyncio.Event()
        pipeline = make_pipeline()
        app = pipeline.app

        async with app.router.lifespan_context(app):
            assert pipeline.tracker.current_state().status == "connecting"

        assert pipeline.tracker.connection_task.cancelled()
