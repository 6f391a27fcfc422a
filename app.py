import atexit
import json
import logging
import queue
from datetime import datetime, timedelta, timezone

from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager, create_access_token, create_refresh_token,
    get_jwt, get_jwt_identity, jwt_required
)

from mofumofu.chat import ChatDirectory, ChatSessionController
from mofumofu.config import MESSAGE_PAGE_SIZE, Settings
from mofumofu.errors import MissingPrecondition, MofumofuError
from mofumofu.geo import NearbyDogSearch
from mofumofu.helpers import now_iso, parse_number
from mofumofu.location import ReportedLocation
from mofumofu.matching import MatchingRequestWorkflow
from mofumofu.profiles import ProfileService
from mofumofu.services import Services
from mofumofu.walking import WalkingSessionController

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)

STREAM_KEEPALIVE_SECONDS = 15
RESET_REQUESTED_MESSAGE = "If that email is registered, a reset link is on its way."


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def services() -> Services:
    return current_app.extensions["mofumofu"]


def body():
    return request.get_json(silent=True) or {}


def issue_tokens(identity: str):
    access = create_access_token(identity=identity)
    refresh = create_refresh_token(identity=identity)
    return access, refresh


def current_identity():
    return services().auth.identity_for(get_jwt_identity())


def with_warning(payload, warning):
    if warning:
        payload["warning"] = warning
    return payload


def walking_session(dog_id):
    svc = services()
    identity = current_identity()
    return svc.registry.open(
        ("walking", identity.user_id, dog_id),
        lambda: WalkingSessionController(identity, dog_id, svc.store, svc.mirror, svc.scheduler, svc.clock),
    )


def chat_session(chat_id=None, match_id=None):
    """The live controller for a chat, created and initialized on first use."""
    svc = services()
    identity = current_identity()

    def build(**kwargs):
        controller = ChatSessionController(identity, svc.store, svc.scheduler, svc.clock)
        try:
            controller.initialize(**kwargs)
        except MofumofuError:
            controller.teardown()
            raise
        return controller

    if chat_id:
        return svc.registry.open(("chat", identity.user_id, chat_id), lambda: build(chat_id=chat_id))

    controller = build(match_id=match_id)
    key = ("chat", identity.user_id, controller.session.id)
    existing = svc.registry.get(key)
    if existing is not None:
        controller.teardown()
        return existing
    return svc.registry.open(key, lambda: controller)


def sse(event, data):
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


# ------------------------------------------------------------
# Auth Routes
# ------------------------------------------------------------
@api.post("/api/auth/register")
def register():
    """
    Body:
    {
      "email": "hana@example.com",
      "password": "secret123",
      "name": "Hana",
      "comment": "Loves shiba inus",   // optional
      "pushToken": "ExponentPushToken[...]"  // optional
    }
    """
    data = body()
    auth = services().auth
    user = auth.sign_up(data)
    if data.get("pushToken"):
        auth.update_push_token(user.id, data["pushToken"])
    access, refresh = issue_tokens(user.id)
    return jsonify({"ok": True, "access": access, "refresh": refresh, "user": user.to_json()}), 201


@api.post("/api/auth/login")
def login():
    """
    Body:
    {
      "email": "hana@example.com",
      "password": "secret123",
      "pushToken": "ExponentPushToken[...]"  // optional
    }
    """
    data = body()
    auth = services().auth
    user = auth.sign_in(data)
    if data.get("pushToken"):
        auth.update_push_token(user.id, data["pushToken"])
    access, refresh = issue_tokens(user.id)
    return jsonify({"ok": True, "access": access, "refresh": refresh, "user": user.to_json()}), 200


@api.post("/api/auth/logout")
@jwt_required()
def logout():
    """Authorization: Bearer <ACCESS_TOKEN>. Revokes the token and drops live sessions."""
    svc = services()
    claims = get_jwt()
    expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc) if claims.get("exp") else None
    svc.auth.sign_out(claims["jti"], expires_at)
    svc.registry.close_for(get_jwt_identity())
    return jsonify({"ok": True}), 200


@api.post("/api/auth/refresh")
@jwt_required(refresh=True)
def refresh():
    """
    Authorization: Bearer <REFRESH_TOKEN>
    """
    user_id = get_jwt_identity()
    access, _ = issue_tokens(user_id)
    return jsonify({"ok": True, "access": access}), 200


@api.get("/api/auth/me")
@jwt_required()
def me():
    """Authorization: Bearer <ACCESS_TOKEN>"""
    user = services().auth.user(get_jwt_identity())
    return jsonify({"ok": True, "user": user.to_json()}), 200


@api.post("/api/auth/push-token")
@jwt_required()
def update_push_token():
    """Body: { "pushToken": "ExponentPushToken[...]" }  (empty clears it)"""
    services().auth.update_push_token(get_jwt_identity(), body().get("pushToken"))
    return jsonify({"ok": True}), 200


@api.post("/api/auth/password-reset")
def request_password_reset():
    """
    Body: { "email": "hana@example.com" }
    Same answer whether or not the address is registered.
    """
    services().auth.request_password_reset(body().get("email"))
    return jsonify({"ok": True, "message": RESET_REQUESTED_MESSAGE}), 200


@api.post("/api/auth/password-reset/confirm")
def confirm_password_reset():
    """
    Body:
    {
      "token": "<token from the reset link>",
      "password": "new-secret123"
    }
    """
    data = body()
    services().auth.reset_password(data.get("token"), data.get("password"))
    return jsonify({"ok": True}), 200


# ------------------------------------------------------------
# Profiles
# ------------------------------------------------------------
def profile_service():
    svc = services()
    return ProfileService(current_identity(), svc.store, svc.blobs, svc.clock)


@api.get("/api/users/me")
@jwt_required()
def get_my_profile():
    return jsonify({"ok": True, "user": profile_service().me().to_json()}), 200


@api.patch("/api/users/me")
@jwt_required()
def update_my_profile():
    """
    Body (all optional):
    {
      "name": "Hana",
      "comment": "Loves shiba inus",
      "imageBase64": "data:image/jpeg;base64,..."
    }
    """
    user, warning = profile_service().update_user(body())
    return jsonify(with_warning({"ok": True, "user": user.to_json()}, warning)), 200


@api.post("/api/dogs")
@jwt_required()
def create_dog():
    """
    Body:
    {
      "name": "Mochi",
      "sex": "female",          // male | female
      "age": 3,
      "likes": "Tennis balls",
      "notes": "Shy with big dogs",
      "imageBase64": "data:image/jpeg;base64,..."  // optional
    }
    """
    dog, warning = profile_service().register_dog(body())
    return jsonify(with_warning({"ok": True, "item": dog.to_json()}, warning)), 201


@api.get("/api/dogs/mine")
@jwt_required()
def list_my_dogs():
    items = [d.to_json() for d in profile_service().my_dogs()]
    return jsonify({"ok": True, "items": items}), 200


@api.get("/api/dogs/<dog_id>")
@jwt_required()
def get_dog(dog_id):
    return jsonify({"ok": True, "item": profile_service().get_dog(dog_id).to_json()}), 200


@api.patch("/api/dogs/<dog_id>")
@jwt_required()
def update_dog(dog_id):
    dog, warning = profile_service().update_dog(dog_id, body())
    return jsonify(with_warning({"ok": True, "item": dog.to_json()}, warning)), 200


@api.get("/api/blobs/<path:path>")
def get_blob(path):
    data, content_type = services().blobs.open(path)
    return Response(data, mimetype=content_type, headers={"Cache-Control": "public, max-age=300"})


# ------------------------------------------------------------
# Walking
# ------------------------------------------------------------
@api.get("/api/dogs/<dog_id>/walking")
@jwt_required()
def get_walking(dog_id):
    """Current walking state; re-reads the dog like a screen regaining focus."""
    return jsonify({"ok": True, "item": walking_session(dog_id).refresh()}), 200


@api.post("/api/dogs/<dog_id>/walking/toggle")
@jwt_required()
def toggle_walking(dog_id):
    """
    Body (what the device reported):
    {
      "permission": "granted",   // or "denied"
      "latitude": 35.6595,
      "longitude": 139.7005
    }
    """
    location = ReportedLocation.from_payload(body())
    return jsonify({"ok": True, "item": walking_session(dog_id).toggle_walking(location)}), 200


@api.post("/api/dogs/<dog_id>/walking/leave")
@jwt_required()
def leave_walking(dog_id):
    services().registry.close(("walking", get_jwt_identity(), dog_id))
    return jsonify({"ok": True}), 200


# ------------------------------------------------------------
# Nearby search
# ------------------------------------------------------------
@api.post("/api/search/nearby")
@jwt_required()
def search_nearby():
    """
    Body:
    {
      "permission": "granted",
      "latitude": 35.6595,
      "longitude": 139.7005,
      "radiusKm": 5      // optional
    }
    """
    svc = services()
    data = body()
    radius = parse_number(data.get("radiusKm"))
    if data.get("radiusKm") not in (None, "") and (radius is None or radius <= 0):
        raise MissingPrecondition("Field 'radiusKm' must be a positive number.")
    search = NearbyDogSearch(
        current_identity(), svc.store, svc.mirror, ReportedLocation.from_payload(data),
        radius_km=svc.settings.search_radius_km, clock=svc.clock,
    )
    return jsonify({"ok": True, "items": search.search(radius)}), 200


# ------------------------------------------------------------
# Petting requests
# ------------------------------------------------------------
def matching_workflow():
    svc = services()
    return MatchingRequestWorkflow(current_identity(), svc.store, svc.clock)


@api.post("/api/dogs/<dog_id>/requests")
@jwt_required()
def send_request(dog_id):
    item = matching_workflow().send_request(dog_id)
    return jsonify({"ok": True, "item": item.to_json()}), 201


@api.get("/api/dogs/<dog_id>/requests/active")
@jwt_required()
def has_active_request(dog_id):
    return jsonify({"ok": True, "applied": matching_workflow().has_active_request(dog_id)}), 200


@api.get("/api/requests/incoming")
@jwt_required()
def list_incoming_requests():
    items = [r.to_json() for r in matching_workflow().incoming()]
    return jsonify({"ok": True, "items": items}), 200


@api.get("/api/requests/sent")
@jwt_required()
def list_sent_requests():
    items = [r.to_json() for r in matching_workflow().sent()]
    return jsonify({"ok": True, "items": items}), 200


@api.post("/api/requests/<request_id>/accept")
@jwt_required()
def accept_request(request_id):
    """Accepts a pending request: creates the match and its chat in one transaction."""
    accepted = matching_workflow().accept(request_id)
    return jsonify({"ok": True, **accepted.to_json()}), 200


@api.post("/api/requests/<request_id>/reject")
@jwt_required()
def reject_request(request_id):
    item = matching_workflow().reject(request_id)
    return jsonify({"ok": True, "item": item.to_json()}), 200


# ------------------------------------------------------------
# Chats & Messages
# ------------------------------------------------------------
@api.get("/api/chats")
@jwt_required()
def list_chats():
    """
    Chats where the current user is the dog owner or the petting user,
    newest activity first, without the ones they deleted.
    """
    svc = services()
    items = ChatDirectory(current_identity(), svc.store, svc.clock).list_chats()
    return jsonify({"ok": True, "items": items}), 200


@api.post("/api/chats")
@jwt_required()
def open_chat_for_match():
    """Body: { "matchId": "..." }. Returns the match's chat, creating it if needed."""
    match_id = body().get("matchId")
    if not match_id:
        raise MissingPrecondition("Missing fields: matchId")
    controller = chat_session(match_id=match_id)
    return jsonify({"ok": True, "item": controller.snapshot()}), 200


@api.get("/api/chats/<chat_id>")
@jwt_required()
def get_chat(chat_id):
    return jsonify({"ok": True, "item": chat_session(chat_id).check_expiry()}), 200


@api.delete("/api/chats/<chat_id>")
@jwt_required()
def delete_chat(chat_id):
    """Hides the chat for the current user only."""
    svc = services()
    identity = current_identity()
    ChatDirectory(identity, svc.store, svc.clock).hide(chat_id)
    svc.registry.close(("chat", identity.user_id, chat_id))
    return jsonify({"ok": True}), 200


@api.post("/api/chats/<chat_id>/close")
@jwt_required()
def close_chat(chat_id):
    return jsonify({"ok": True, "item": chat_session(chat_id).close()}), 200


@api.get("/api/chats/<chat_id>/messages")
@jwt_required()
def list_chat_messages(chat_id):
    """
    Latest messages, newest first (?limit=, default 50).
    Unread messages from the other participant are marked read.
    """
    limit = parse_number(request.args.get("limit"))
    limit = int(limit) if limit and limit > 0 else MESSAGE_PAGE_SIZE
    items = [m.to_json() for m in chat_session(chat_id).load_messages(limit)]
    return jsonify({"ok": True, "items": items}), 200


@api.post("/api/chats/<chat_id>/messages")
@jwt_required()
def send_chat_message(chat_id):
    """
    Body:
      { "text": "Hi! Can Mochi say hello?" }
    """
    controller = chat_session(chat_id)
    text = (body().get("text") or "").strip()
    if not text:
        return jsonify({"ok": False, "error": "Message text is required."}), 400
    message = controller.send_message(text)
    if message is None:
        return jsonify({"ok": False, "error": "This chat has ended."}), 409
    return jsonify({"ok": True, "item": message.to_json()}), 201


@api.get("/api/chats/<chat_id>/stream")
@jwt_required()
def stream_chat(chat_id):
    """
    Server-sent events for an open chat screen:
      event: messages  -> latest messages, newest first (replaces the list)
      event: chat      -> chat state, sent again when the chat closes
    """
    svc = services()
    controller = chat_session(chat_id)
    key = ("chat", get_jwt_identity(), chat_id)
    events = queue.Queue()
    unsubscribe_chat = controller.subscribe(lambda snap: events.put(("chat", snap)))
    events.put(("chat", controller.snapshot()))
    unsubscribe_messages = controller.subscribe_messages(
        lambda items: events.put(("messages", [m.to_json() for m in items]))
    )

    def generate():
        try:
            # the registry must not evict the controller while the stream is open
            with svc.registry.holding(key):
                while True:
                    try:
                        event, data = events.get(timeout=STREAM_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keep-alive\n\n"
                        continue
                    yield sse(event, data)
        finally:
            unsubscribe_messages()
            unsubscribe_chat()

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@api.post("/api/chats/<chat_id>/leave")
@jwt_required()
def leave_chat(chat_id):
    """The chat screen was closed: stop its timers and subscriptions."""
    services().registry.close(("chat", get_jwt_identity(), chat_id))
    return jsonify({"ok": True}), 200


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------
@api.get("/health")
def health():
    return {"ok": True, "service": "mofumofu-backend", "time": now_iso()}


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------
def handle_error(e: MofumofuError):
    if e.status_code >= 500:
        logger.error("%s: %s", type(e).__name__, e.message, exc_info=e.__cause__)
    return jsonify({"ok": False, "error": e.message}), e.status_code


def create_app(settings: Settings = None, svc: Services = None):
    settings = settings or (svc.settings if svc else Settings.from_env())
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.config["JWT_SECRET_KEY"] = settings.jwt_secret
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=12)
    app.config["JWT_REFRESH_TOKEN_EXPIRES"] = timedelta(days=30)

    svc = svc or Services.connect(settings)
    app.extensions["mofumofu"] = svc

    jwt = JWTManager(app)

    @jwt.token_in_blocklist_loader
    def token_revoked(jwt_header, jwt_payload):
        return svc.auth.is_revoked(jwt_payload["jti"])

    # CORS (tune ALLOWED_ORIGINS in .env for prod)
    origins = "*" if settings.allowed_origins == ["*"] else settings.allowed_origins
    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=["Authorization"],
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        max_age=86400,
    )

    app.register_blueprint(api)
    app.register_error_handler(MofumofuError, handle_error)

    svc.start()
    return app


if __name__ == "__main__":
    settings = Settings.from_env()
    app = create_app(settings)
    atexit.register(app.extensions["mofumofu"].stop)
    app.run(host="0.0.0.0", port=settings.port, debug=settings.debug, use_reloader=False, threaded=True)
