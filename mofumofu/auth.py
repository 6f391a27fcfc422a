"""
Accounts, password sign-in, password reset and the token blocklist.

Tokens themselves are issued by flask_jwt_extended in app.py; this module
only knows about users, password hashes and which token ids were revoked.
"""
import hashlib
import logging
import secrets

import redis
from email_validator import EmailNotValidError, validate_email
from werkzeug.security import check_password_hash, generate_password_hash

from mofumofu.config import RESET_TOKEN_LIFETIME
from mofumofu.errors import Conflict, MissingPrecondition, RemoteWriteError, Unauthorized
from mofumofu.helpers import as_datetime, utcnow
from mofumofu.models import Identity, UserAccount

logger = logging.getLogger(__name__)


def _digest(token):
    """Reset tokens are stored hashed; the raw token only travels in the email."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------- Validators --------------------------
def validate_register_payload(data):
    required = ["email", "password", "name"]
    missing = [f for f in required if not data.get(f)]
    if missing:
        return f"Missing fields: {', '.join(missing)}"

    try:
        v = validate_email(data["email"], check_deliverability=False)
        data["email"] = v.normalized
    except EmailNotValidError as e:
        return f"Invalid email: {e}"

    if len(data["password"]) < 8:
        return "Password must be at least 8 characters."

    if len(data["name"].strip()) < 1:
        return "Name must not be empty."

    return None


def validate_login_payload(data):
    required = ["email", "password"]
    missing = [f for f in required if not data.get(f)]
    if missing:
        return f"Missing fields: {', '.join(missing)}"
    try:
        v = validate_email(data["email"], check_deliverability=False)
        data["email"] = v.normalized
    except EmailNotValidError:
        return "Invalid email."
    return None


# ------------------------------------------------------------
# Token blocklist
# ------------------------------------------------------------
class TokenBlocklist:
    def __init__(self, client: redis.Redis, prefix="mofumofu:revoked"):
        self.redis = client
        self.prefix = prefix

    @classmethod
    def connect(cls, url):
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def revoke(self, jti, ttl_seconds):
        try:
            self.redis.setex(f"{self.prefix}:{jti}", max(1, int(ttl_seconds)), "1")
        except redis.RedisError as e:
            raise RemoteWriteError("Could not sign out. Please try again.") from e

    def is_revoked(self, jti):
        try:
            return self.redis.exists(f"{self.prefix}:{jti}") > 0
        except redis.RedisError as e:
            # can't tell, so refuse the token
            logger.error("Token blocklist unavailable: %s", e)
            return True


# ------------------------------------------------------------
# AuthService
# ------------------------------------------------------------
class AuthService:
    def __init__(self, store, blocklist, clock=utcnow, mailer=None):
        self.store = store
        self.blocklist = blocklist
        self.mailer = mailer
        self.clock = clock
        self._listeners = []

    def sign_up(self, data):
        """
        data: {"email", "password", "name", "comment"?}
        """
        err = validate_register_payload(data)
        if err:
            raise MissingPrecondition(err)

        email = data["email"]
        if self.store.find("users", {"email": email}, limit=1):
            raise Conflict("Email already registered.")

        doc = {
            "email": email,
            "password_hash": generate_password_hash(data["password"]),
            "name": data["name"].strip(),
            "profileImage": None,
            "comment": (data.get("comment") or "").strip(),
            "isOwner": False,
            "pushToken": None,
            "createdAt": self.clock(),
        }
        user_id = self.store.insert("users", doc)
        user = UserAccount.from_doc({**doc, "id": user_id})
        logger.info("User %s signed up", user_id)
        self._emit(self._identity(user))
        return user

    def sign_in(self, data):
        err = validate_login_payload(data)
        if err:
            raise MissingPrecondition(err)

        found = self.store.find("users", {"email": data["email"]}, limit=1)
        doc = found[0] if found else None
        if not doc or not check_password_hash(doc.get("password_hash", ""), data["password"]):
            raise Unauthorized("Invalid credentials.")

        user = UserAccount.from_doc(doc)
        self._emit(self._identity(user))
        return user

    def sign_out(self, jti, expires_at):
        ttl = (expires_at - self.clock()).total_seconds() if expires_at else 0
        self.blocklist.revoke(jti, ttl)
        self._emit(None)

    def is_revoked(self, jti):
        return self.blocklist.is_revoked(jti)

    def user(self, user_id):
        doc = self.store.get("users", user_id)
        if not doc:
            raise Unauthorized("User no longer exists.")
        return UserAccount.from_doc(doc)

    def identity_for(self, user_id):
        return self._identity(self.user(user_id))

    @staticmethod
    def _identity(user):
        return Identity(user_id=user.id, email=user.email, name=user.name)

    def update_push_token(self, user_id, token):
        token = (token or "").strip() or None
        if not self.store.update("users", user_id, {"pushToken": token}):
            raise Unauthorized("User no longer exists.")

    # ---------------------- password reset ------------------
    def request_password_reset(self, email):
        """
        Store a one-time reset token and mail the link. Returns whether a mail
        went out; callers answer the same way either way so the reply never
        reveals which addresses are registered.
        """
        try:
            email = validate_email(email or "", check_deliverability=False).normalized
        except EmailNotValidError:
            raise MissingPrecondition("Invalid email.")

        found = self.store.find("users", {"email": email}, limit=1)
        if not found:
            logger.info("Password reset requested for an unknown address")
            return False

        token = secrets.token_urlsafe(32)
        self.store.update("users", found[0]["id"], {
            "resetTokenHash": _digest(token),
            "resetTokenExpiresAt": self.clock() + RESET_TOKEN_LIFETIME,
        })
        if self.mailer is None:
            logger.warning("No mail server configured; reset link for user %s not sent", found[0]["id"])
            return False
        return self.mailer.send_password_reset(email, token)

    def reset_password(self, token, password):
        if not isinstance(token, str) or not token or not isinstance(password, str) or not password:
            raise MissingPrecondition("Missing fields: token, password")
        if len(password) < 8:
            raise MissingPrecondition("Password must be at least 8 characters.")

        found = self.store.find("users", {"resetTokenHash": _digest(token)}, limit=1)
        doc = found[0] if found else None
        expires_at = as_datetime(doc.get("resetTokenExpiresAt")) if doc else None
        if expires_at is None or expires_at <= self.clock():
            raise Unauthorized("This reset link is invalid or has expired.")

        self.store.update("users", doc["id"], {
            "password_hash": generate_password_hash(password),
            "resetTokenHash": None,
            "resetTokenExpiresAt": None,
        })
        logger.info("Password reset for user %s", doc["id"])
        return UserAccount.from_doc(doc)

    # ---------------------- identity listeners --------------
    def listen(self, callback):
        """callback(identity_or_None) on every sign-in, sign-up and sign-out."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, identity):
        for callback in list(self._listeners):
            try:
                callback(identity)
            except Exception:
                logger.exception("Identity listener failed")
