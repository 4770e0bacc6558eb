"""
Run API Server - HTTP surface over a RunService.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
existing asyncio loop. Routes:

    POST /graphs/{graph_id}/runs                       trigger a run (202)
    GET  /runs/{run_id}/summary                        run summary
    GET  /runs/{run_id}/steps/{step_id}                step detail
    POST /runs/{run_id}/cancel                         cancel a run
    POST /runs/{run_id}/errors/{error_id}/resolve      resolve an error entry
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field

from aiohttp import web

from agentgraph.errors import GraphDefinitionError, RunNotFoundError, RunStateError
from agentgraph.runtime.run_service import RunService

logger = logging.getLogger(__name__)


@dataclass
class RunApiServerConfig:
    """Configuration for the run API HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    # graph_id -> secret for HMAC-SHA256 verification of trigger requests
    secrets: dict[str, str] = field(default_factory=dict)


class RunApiServer:
    """
    Embedded HTTP server exposing run triggers and the run summary API.

    Lifecycle:
        server = RunApiServer(service, config)
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(self, service: RunService, config: RunApiServerConfig | None = None):
        self._service = service
        self._config = config or RunApiServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/graphs/{graph_id}/runs", self._handle_trigger)
        app.router.add_get("/runs/{run_id}/summary", self._handle_summary)
        app.router.add_get("/runs/{run_id}/steps/{step_id}", self._handle_step)
        app.router.add_post("/runs/{run_id}/cancel", self._handle_cancel)
        app.router.add_post("/runs/{run_id}/errors/{error_id}/resolve", self._handle_resolve)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(
            f"Run API server started on {self._config.host}:{self.port} "
            f"serving {len(self._service.get_graph_ids())} graph(s)"
        )

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Run API server stopped")

    # === HANDLERS ===

    async def _handle_trigger(self, request: web.Request) -> web.Response:
        graph_id = request.match_info["graph_id"]
        if self._service.get_graph(graph_id) is None:
            return web.json_response({"error": f"Unknown graph: {graph_id}"}, status=404)

        try:
            body = await request.read()
        except Exception:
            return web.json_response({"error": "Failed to read request body"}, status=400)

        secret = self._config.secrets.get(graph_id)
        if secret and not self._verify_signature(request, body, secret):
            return web.json_response({"error": "Invalid signature"}, status=401)

        try:
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError):
            return web.json_response({"error": "Body must be JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        # {"input": {...}, "context": {...}} or the bare trigger input
        if "input" in payload:
            trigger_input = payload.get("input") or {}
            context = payload.get("context")
        else:
            trigger_input, context = payload, None

        await self._service.event_bus.emit_trigger_received(
            graph_id=graph_id, path=request.path, method=request.method, payload=trigger_input
        )
        try:
            run_id = await self._service.trigger(graph_id, trigger_input, context)
        except GraphDefinitionError as e:
            return web.json_response({"error": str(e), "errors": e.errors}, status=422)

        return web.json_response({"status": "accepted", "run_id": run_id}, status=202)

    async def _handle_summary(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        try:
            summary = await self._service.get_summary(run_id)
        except RunNotFoundError:
            return web.json_response({"error": f"Run not found: {run_id}"}, status=404)
        return web.json_response(summary.model_dump(mode="json"))

    async def _handle_step(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        step_id = request.match_info["step_id"]
        try:
            detail = await self._service.get_step_detail(run_id, step_id)
        except RunNotFoundError:
            return web.json_response({"error": f"Run not found: {run_id}"}, status=404)
        if detail is None:
            return web.json_response(
                {"error": f"Step {step_id} has no executions in run {run_id}"}, status=404
            )
        return web.json_response(detail.model_dump(mode="json"))

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        cancelled = await self._service.cancel(run_id)
        if not cancelled:
            return web.json_response({"error": f"Run {run_id} is not active"}, status=409)
        return web.json_response({"status": "cancelling", "run_id": run_id}, status=202)

    async def _handle_resolve(self, request: web.Request) -> web.Response:
        run_id = request.match_info["run_id"]
        error_id = request.match_info["error_id"]
        try:
            state = await self._service.resolve_error(run_id, error_id)
        except RunNotFoundError:
            return web.json_response({"error": f"Run not found: {run_id}"}, status=404)
        except RunStateError as e:
            return web.json_response({"error": str(e)}, status=409)
        except KeyError:
            return web.json_response({"error": f"Error not found: {error_id}"}, status=404)
        unresolved = sum(1 for e in state.errors if not e.resolved)
        return web.json_response({"status": "resolved", "unresolved": unresolved})

    def _verify_signature(self, request: web.Request, body: bytes, secret: str) -> bool:
        """Verify HMAC-SHA256 signature from X-Hub-Signature-256 header."""
        signature_header = request.headers.get("X-Hub-Signature-256", "")
        if not signature_header.startswith("sha256="):
            return False

        expected_sig = signature_header[7:]
        computed_sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_sig, computed_sig)

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None
