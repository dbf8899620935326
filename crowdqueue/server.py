"""HTTP API and realtime channel for CrowdQueue.

Control happens over plain HTTP requests; the Socket.IO channel only pushes
``state`` and ``progress`` messages to viewers.
"""

import logging
import time
from typing import Callable, Optional

from flask import Flask, jsonify, redirect, request
from flask_socketio import SocketIO, emit

from .base_client import PlaybackProvider
from .broadcaster import STATE_EVENT, SocketIOTransport, StateBroadcaster
from .config import AppSettings
from .engine import PlaybackEngine
from .errors import (
    InvalidInputError,
    ProviderError,
    ProviderTransientError,
    ProviderUnauthorizedError,
)
from .identity import IdentityRegistry
from .models import Identity, RejectReason
from .session import Scheduler

logger = logging.getLogger(__name__)

EXTENSION_KEY = "crowdqueue"


def client_address() -> str:
    """Origin address of the current request, honouring X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    address = forwarded or request.remote_addr or ""
    return address.split(",")[0].strip()


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _text_field(body: dict, key: str) -> str:
    """A string field from a JSON body, stripped; empty when absent.

    Raises:
        InvalidInputError: If the field is present but not a string.
    """
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidInputError(f"{key} must be a string")
    return value.strip()


def create_app(
    settings: AppSettings,
    provider: Optional[PlaybackProvider] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Callable[[], float] = time.monotonic,
    identities: Optional[IdentityRegistry] = None,
    http_logging: bool = False,
) -> tuple[Flask, SocketIO]:
    """Build the Flask app, its Socket.IO server and the engine behind them.

    Args:
        settings: Application settings.
        provider: Playback provider; a Spotify client is created when omitted.
        scheduler: Timer backend for the engine.
        clock: Monotonic clock for the engine.
        identities: Voter registry; a fresh one when omitted.
        http_logging: Log provider HTTP traffic (only when creating the provider).

    Returns:
        Tuple of (app, socketio). The engine is in ``app.extensions["crowdqueue"]``.
    """
    if provider is None:
        from .client_factory import create_playback_provider

        provider = create_playback_provider(settings.spotify, http_logging=http_logging)

    app = Flask(__name__)
    socketio = SocketIO(
        app,
        cors_allowed_origins=settings.server.cors_allowed_origins,
        async_mode="threading",
    )

    identities = identities or IdentityRegistry()
    engine = PlaybackEngine(
        provider=provider,
        settings=settings.voting,
        broadcaster=StateBroadcaster(SocketIOTransport(socketio)),
        scheduler=scheduler,
        clock=clock,
        identities=identities,
    )
    app.extensions[EXTENSION_KEY] = engine
    search_limit = settings.spotify.search_limit

    @app.after_request
    def allow_cross_origin(response):
        response.headers.setdefault(
            "Access-Control-Allow-Origin", settings.server.cors_allowed_origins
        )
        response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
        return response

    # ---------------------------------------------------------------- errors

    @app.errorhandler(InvalidInputError)
    def invalid_input(e):
        return jsonify({"ok": False, "error": "invalid_input", "message": str(e)}), 400

    @app.errorhandler(ProviderUnauthorizedError)
    def provider_unauthorized(e):
        logger.warning(f"Provider not authorized: {e}")
        return (
            jsonify({"ok": False, "error": "provider_unauthorized", "message": str(e)}),
            401,
        )

    @app.errorhandler(ProviderTransientError)
    def provider_transient(e):
        logger.warning(f"Provider unavailable: {e}")
        return (
            jsonify({"ok": False, "error": "provider_transient", "message": str(e)}),
            503,
        )

    # ---------------------------------------------------------------- realtime

    @socketio.on("connect")
    def on_connect():
        emit(STATE_EVENT, engine.snapshot().to_dict())

    # ---------------------------------------------------------------- state

    @app.get("/health")
    def health():
        return jsonify({"ok": True})

    @app.get("/state")
    def state():
        return jsonify(engine.snapshot().to_dict())

    # ---------------------------------------------------------------- voting

    @app.post("/vote")
    def vote():
        body = _json_body()
        track_id = _text_field(body, "trackId")
        if not track_id:
            raise InvalidInputError("trackId required")

        token = _text_field(body, "token") or None
        username = _text_field(body, "username") or None
        identity = identities.resolve(token, username, client_address())
        if engine.is_identity_banned(identity):
            return jsonify({"ok": False, "error": RejectReason.BANNED.value, "reason": "user banned"}), 403

        # Provider lookup happens before the engine's vote path
        track = provider.get_track(track_id)
        outcome = engine.cast_vote(identity, track)
        if not outcome.accepted:
            status = 403 if outcome.reason is RejectReason.BANNED else 429
            return jsonify({"ok": False, "error": outcome.reason.value, "reason": outcome.detail}), status

        votes = [entry.to_dict() for entry in engine.snapshot().votes]
        return jsonify({"ok": True, "count": outcome.count, "votes": votes})

    @app.get("/search")
    def search():
        query = str(request.args.get("q", "")).strip()
        if not query:
            return jsonify({"items": []})
        tracks = engine.search(query, limit=search_limit)
        return jsonify({"items": [t.to_dict() for t in tracks]})

    # ---------------------------------------------------------------- playback

    @app.post("/skip")
    def skip():
        result = engine.force_advance("manual-skip")
        votes = [entry.to_dict() for entry in engine.snapshot().votes]
        return jsonify({"ok": True, **result.to_dict(), "votes": votes})

    @app.post("/pause")
    def pause():
        engine.pause()
        return jsonify({"ok": True})

    @app.post("/resume")
    def resume():
        engine.resume()
        return jsonify({"ok": True})

    @app.get("/devices")
    def devices():
        return jsonify([d.to_dict() for d in provider.list_devices()])

    @app.post("/device")
    def device():
        device_id = _text_field(_json_body(), "deviceId") or None
        engine.set_device(device_id)
        return jsonify({"ok": True, "deviceId": device_id})

    # ---------------------------------------------------------------- identities

    @app.post("/join")
    def join():
        username = _text_field(_json_body(), "username")
        if not username:
            raise InvalidInputError("username required")

        address = client_address()
        if engine.is_identity_banned(Identity(name=username, address=address)):
            return jsonify({"ok": False, "error": "banned"}), 403

        token = identities.issue_token(address, username=username)
        return jsonify({"ok": True, "userId": token, "token": token, "username": username})

    @app.post("/identify")
    def identify():
        body = _json_body()
        token = _text_field(body, "token")
        username = _text_field(body, "username") or "Guest"
        avatar = _text_field(body, "avatar") or None
        if not identities.is_known_token(token):
            return jsonify({"ok": False, "error": "invalid_token"}), 404

        address = client_address()
        if engine.is_identity_banned(Identity(name=username, address=address)):
            return jsonify({"ok": False, "error": "banned"}), 403

        record = identities.identify(token, username, avatar, address)
        return jsonify({"ok": True, "username": record.username, "avatar": record.avatar})

    @app.get("/admin/users")
    def admin_users():
        return jsonify({"users": [u.to_dict() for u in identities.users()]})

    # ---------------------------------------------------------------- settings

    @app.get("/admin/settings")
    def get_settings():
        return jsonify(engine.public_settings())

    @app.post("/admin/settings")
    def post_settings():
        result = engine.update_settings(_json_body())
        return jsonify({**result.settings, "rejected": result.rejected})

    # ---------------------------------------------------------------- auth

    @app.get("/auth/login")
    def auth_login():
        return redirect(provider.authorize_url())

    @app.get("/auth/callback")
    def auth_callback():
        code = request.args.get("code")
        if not code:
            return "Missing code", 400
        try:
            provider.complete_authorization(code)
        except ProviderError as e:
            logger.error(f"OAuth callback error: {e}")
            return "OAuth failed. Check server logs & env vars.", 500

        try:
            engine.sync_with_provider()
        except ProviderError as e:
            logger.info(f"Nothing to follow yet: {e}")

        return (
            '<html><body style="font-family:system-ui">'
            "✅ Connected to Spotify. You can close this tab and return to the dashboard."
            "</body></html>"
        )

    @app.get("/auth/status")
    def auth_status():
        return jsonify({"authorized": provider.is_authorized})

    return app, socketio
