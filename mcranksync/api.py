"""HTTP API consumed by the Minecraft server plugin."""
from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import aiohttp.web

from .errors import (
    AuthError,
    NotFoundError,
    RankSyncError,
    ValidationError,
)
from .service import RankEventResult, RankSyncService

LOGGER = logging.getLogger(__name__)

API_PREFIX = "/api/"

SERVICE_KEY = aiohttp.web.AppKey("service", RankSyncService)
API_TOKEN_KEY = aiohttp.web.AppKey("api_token", str)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _format_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")
    return value


@aiohttp.web.middleware
async def error_middleware(request: aiohttp.web.Request, handler):
    try:
        return await handler(request)
    except aiohttp.web.HTTPException:
        raise
    except AuthError:
        return aiohttp.web.json_response({"error": "Unauthorized"}, status=401)
    except RankSyncError as exc:
        if exc.status >= 500:
            LOGGER.error("Error handling %s %s: %s", request.method, request.path, exc)
            return aiohttp.web.json_response(
                {"error": "Internal server error"}, status=500
            )
        return aiohttp.web.json_response(
            {"success": False, "error": exc.message}, status=exc.status
        )
    except Exception:
        LOGGER.exception("Unhandled error for %s %s", request.method, request.path)
        return aiohttp.web.json_response({"error": "Internal server error"}, status=500)


@aiohttp.web.middleware
async def auth_middleware(request: aiohttp.web.Request, handler):
    if request.path.startswith(API_PREFIX):
        expected = f"Bearer {request.app[API_TOKEN_KEY]}"
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(
            auth.encode(), expected.encode()
        ):
            LOGGER.warning("Unauthorized API request from %s", request.remote)
            raise AuthError()
    return await handler(request)


async def _read_body(request: aiohttp.web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON")
    return body


def _require(body: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not body.get(name)]
    if missing:
        label = "fields" if len(names) > 1 else "field"
        raise ValidationError(f"Missing required {label}: {', '.join(names)}")
    for name in names:
        if not isinstance(body[name], str):
            raise ValidationError(f"Field '{name}' must be a string")


def _groups(body: Dict[str, Any]) -> List[str]:
    groups = body.get("groups") or []
    if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
        raise ValidationError("Field 'groups' must be a list of strings")
    return groups


def _rank_event_payload(result: RankEventResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "linked": result.linked,
        "message": result.message,
        "rolesAdded": result.roles_added,
        "rolesRemoved": result.roles_removed,
    }


async def _handle_rank_update(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """POST /api/rank-update - rank change pushed by the plugin."""
    body = await _read_body(request)
    _require(body, "uuid", "playerName")
    groups = _groups(body)
    LOGGER.info(
        "Rank update received for %s (%s): %s",
        body["playerName"],
        body["uuid"],
        body.get("eventType"),
    )
    LOGGER.debug("Groups: %s, Primary: %s", groups, body.get("primaryGroup"))
    service = request.app[SERVICE_KEY]
    result = await service.handle_rank_event(body["uuid"], body["playerName"], groups)
    return aiohttp.web.json_response(_rank_event_payload(result))


async def _handle_player_join(request: aiohttp.web.Request) -> aiohttp.web.Response:
    """POST /api/player-join - resync roles when a player joins."""
    body = await _read_body(request)
    _require(body, "uuid", "playerName")
    groups = _groups(body)
    LOGGER.info("Player join received for %s (%s)", body["playerName"], body["uuid"])
    service = request.app[SERVICE_KEY]
    result = await service.handle_rank_event(body["uuid"], body["playerName"], groups)
    return aiohttp.web.json_response(_rank_event_payload(result))


async def _handle_link(request: aiohttp.web.Request) -> aiohttp.web.Response:
    body = await _read_body(request)
    _require(body, "uuid", "playerName", "linkCode")
    LOGGER.info("Link request received for %s (%s)", body["playerName"], body["uuid"])
    service = request.app[SERVICE_KEY]
    discord_id = service.link_account(body["uuid"], body["playerName"], body["linkCode"])
    return aiohttp.web.json_response(
        {
            "success": True,
            "message": "Account linked successfully",
            "discordId": discord_id,
        }
    )


async def _handle_unlink(request: aiohttp.web.Request) -> aiohttp.web.Response:
    body = await _read_body(request)
    _require(body, "uuid")
    LOGGER.info("Unlink request received for %s", body["uuid"])
    service = request.app[SERVICE_KEY]
    link = await service.unlink_by_mc_uuid(body["uuid"])
    if link is None:
        raise NotFoundError("Account not linked")
    return aiohttp.web.json_response(
        {"success": True, "message": "Account unlinked successfully"}
    )


async def _handle_linked(request: aiohttp.web.Request) -> aiohttp.web.Response:
    service = request.app[SERVICE_KEY]
    link = service.links.get_by_mc_uuid(request.match_info["uuid"])
    if link is None:
        return aiohttp.web.json_response({"linked": False})
    return aiohttp.web.json_response(
        {
            "linked": True,
            "discordId": link.discord_id,
            "linkedAt": _format_datetime(link.linked_at),
        }
    )


async def _handle_health(request: aiohttp.web.Request) -> aiohttp.web.Response:
    return aiohttp.web.json_response({"status": "ok", "timestamp": _utc_timestamp()})


def create_app(service: RankSyncService, api_token: str) -> aiohttp.web.Application:
    app = aiohttp.web.Application(middlewares=[error_middleware, auth_middleware])
    app[SERVICE_KEY] = service
    app[API_TOKEN_KEY] = api_token
    app.router.add_post("/api/rank-update", _handle_rank_update)
    app.router.add_post("/api/player-join", _handle_player_join)
    app.router.add_post("/api/link", _handle_link)
    app.router.add_post("/api/unlink", _handle_unlink)
    app.router.add_get("/api/linked/{uuid}", _handle_linked)
    app.router.add_get("/health", _handle_health)
    return app


async def start_api_server(
    service: RankSyncService, api_token: str, host: str, port: int
) -> aiohttp.web.AppRunner:
    """Start the API server on the running loop; caller owns the runner cleanup."""
    app = create_app(service, api_token)
    runner = aiohttp.web.AppRunner(app)
    await runner.setup()
    site = aiohttp.web.TCPSite(runner, host, port)
    await site.start()
    LOGGER.info("REST API server listening on %s:%d", host, port)
    return runner
