from dotenv import load_dotenv
load_dotenv()
from flask import Flask, request, jsonify, session as flask_session
from flask_cors import CORS
from flask_compress import Compress
from sqlalchemy import text
from datetime import datetime, timedelta
import logging
import os
import time
import redis
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, limiter

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = Flask(__name__)

_IS_PRODUCTION = bool(os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production")

# --- Ensure SECRET_KEY for sessions ---
secret_key = os.getenv('SECRET_KEY') or os.getenv('FLASK_SECRET_KEY')
if not secret_key:
    # Safe dev fallback to prevent 500s locally. Set SECRET_KEY in production.
    secret_key = 'dev-secret-key-change-me'
app.config['SECRET_KEY'] = secret_key
app.secret_key = secret_key

# --- Session & cookie hardening ---
# Enforce a strong SECRET_KEY in production (do not allow dev fallbacks).
if _IS_PRODUCTION and secret_key.startswith("dev-secret-key-change"):
    raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
if _IS_PRODUCTION:
    app.config["SESSION_COOKIE_SECURE"] = True

# Session expiry controls
# NOTE: PERMANENT_SESSION_LIFETIME only applies when session.permanent=True (set on login).
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "24")))
app.config["SESSION_IDLE_TIMEOUT_MINUTES"] = int(os.getenv("SESSION_IDLE_TIMEOUT_MINUTES", "60"))


# Optional: server-side sessions (allows true revocation when using a shared store like Redis).
# Enable by setting USE_SERVER_SIDE_SESSIONS=1 and SESSION_REDIS_URL (or REDIS_URL).
if os.getenv("USE_SERVER_SIDE_SESSIONS", "0") == "1":
    try:
        from flask_session import Session
        redis_url = os.getenv("SESSION_REDIS_URL") or os.getenv("REDIS_URL")
        if not redis_url:
            raise RuntimeError("USE_SERVER_SIDE_SESSIONS=1 but SESSION_REDIS_URL/REDIS_URL is not set")
        app.config["SESSION_TYPE"] = "redis"
        app.config["SESSION_REDIS"] = redis.from_url(redis_url)
        app.config["SESSION_USE_SIGNER"] = True
        app.config["SESSION_PERMANENT"] = True
        app.config["SESSION_KEY_PREFIX"] = os.getenv("SESSION_KEY_PREFIX", "earnhub:")
        Session(app)
    except Exception as e:
        # Fail closed in production if explicitly enabled but misconfigured.
        if _IS_PRODUCTION:
            raise
        app.logger.warning("Server-side sessions not enabled: %s", e)


# -------------------------------
# Client IP resolution
# -------------------------------
# Behind a reverse proxy request.remote_addr is the proxy, collapsing many
# users into one rate-limit bucket. Trust a single hop in production.
if _IS_PRODUCTION:
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    if os.getenv("RENDER") == "true":
        raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
    _db_url = "sqlite:///earnhub.db"

if _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = _db_url
if not _db_url.startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

# Rate limiting
# - In production, set RATE_LIMIT_STORAGE_URL to a Redis URL for multi-instance correctness.
# - RATELIMIT_ENABLED=0 turns every limit off (local runs and the test suite).
app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1") == "1"

# Initialize extensions
db.init_app(app)
CORS(app, supports_credentials=True)
limiter.init_app(app)
Compress(app)


# -------------------------------
# Session idle timeout enforcement
# -------------------------------

@app.before_request
def _enforce_idle_timeout():
    if not flask_session.get("user_id"):
        return

    idle_minutes = int(app.config.get("SESSION_IDLE_TIMEOUT_MINUTES", 60))
    now_ts = int(time.time())

    last_seen = flask_session.get("_last_seen_ts")
    if isinstance(last_seen, int) and idle_minutes > 0:
        if now_ts - last_seen > idle_minutes * 60:
            # Idle timeout: clear all session state.
            flask_session.clear()
            return

    flask_session["_last_seen_ts"] = now_ts


@app.after_request
def add_default_headers(resp):
    # JSON API responses are user-specific.
    resp.headers.setdefault("Cache-Control", "no-store")
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    return resp


# -------------------------------
# Error handlers
# -------------------------------

@app.errorhandler(404)
def handle_not_found(e):
    return jsonify({"success": False, "error": "Not found"}), 404


@app.errorhandler(405)
def handle_method_not_allowed(e):
    return jsonify({"success": False, "error": "Method not allowed"}), 405


@app.errorhandler(429)
def handle_rate_limited(e):
    return jsonify({"success": False, "error": f"Too many requests: {e.description}"}), 429


@app.errorhandler(500)
def handle_server_error(e):
    db.session.rollback()
    app.logger.error("Unhandled error on %s %s: %s", request.method, request.path, e)
    return jsonify({"success": False, "error": "Internal server error"}), 500


@app.get("/api/health")
@limiter.exempt
def health():
    try:
        db.session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db.session.rollback()
        app.logger.exception("Health check database query failed")
        db_ok = False
    return jsonify({"success": db_ok, "database": "ok" if db_ok else "error", "time": datetime.utcnow().isoformat() + "Z"}), (200 if db_ok else 503)


# Import blueprints/models (split files).
# NOTE: These imports are placed after app setup to avoid circular imports.
from models_users import User, Package  # noqa: F401,E402
from models_wallet import Transaction, Withdrawal  # noqa: F401,E402
from models_notifications import Notification  # noqa: F401,E402
from models_tasks import Task, TaskSubmission  # noqa: F401,E402
from models_referrals import ReferralLevel, ReferralEarning  # noqa: F401,E402
from models_lottery import Lottery, LotteryTicket  # noqa: F401,E402
from models_marketplace import MarketplaceListing, MarketplacePurchase, MarketplaceDispute, DisputeMessage  # noqa: F401,E402
from models_courses import Course, CourseLesson, CourseEnrollment  # noqa: F401,E402
from models_feed import Post, PostLike, PostComment  # noqa: F401,E402
from models_achievements import Achievement, UserAchievement  # noqa: F401,E402

from auth import auth_api  # noqa: E402
from notifications import notifications_api  # noqa: E402
from tasks import tasks_api  # noqa: E402
from admin_tasks import admin_tasks  # noqa: E402
from referrals import referrals_api  # noqa: E402
from admin_referrals import admin_referrals  # noqa: E402
from lottery import lottery_api  # noqa: E402
from admin_lottery import admin_lottery  # noqa: E402
from wallet import wallet_api  # noqa: E402
from admin_withdrawals import admin_withdrawals  # noqa: E402
from marketplace import marketplace_api  # noqa: E402
from admin_marketplace import admin_marketplace  # noqa: E402
from packages import packages_api  # noqa: E402
from daily_reward import daily_reward_api  # noqa: E402
from leaderboard import leaderboard_api  # noqa: E402
from admin_users import admin_users  # noqa: E402
from admin_analytics import admin_analytics  # noqa: E402
from courses import courses_api  # noqa: E402
from admin_courses import admin_courses  # noqa: E402
from feed import feed_api  # noqa: E402
from achievements import achievements_api  # noqa: E402
from user_profile import profile_api  # noqa: E402

app.register_blueprint(auth_api)
app.register_blueprint(notifications_api)
app.register_blueprint(tasks_api)
app.register_blueprint(admin_tasks)
app.register_blueprint(referrals_api)
app.register_blueprint(admin_referrals)
app.register_blueprint(lottery_api)
app.register_blueprint(admin_lottery)
app.register_blueprint(wallet_api)
app.register_blueprint(admin_withdrawals)
app.register_blueprint(marketplace_api)
app.register_blueprint(admin_marketplace)
app.register_blueprint(packages_api)
app.register_blueprint(daily_reward_api)
app.register_blueprint(leaderboard_api)
app.register_blueprint(admin_users)
app.register_blueprint(admin_analytics)
app.register_blueprint(courses_api)
app.register_blueprint(admin_courses)
app.register_blueprint(feed_api)
app.register_blueprint(achievements_api)
app.register_blueprint(profile_api)


def _ensure_columns(table_name: str, columns_sql: dict[str, str]):
    """Best-effort: add missing columns for SQLite/Postgres without a full migration tool."""
    dialect = db.engine.dialect.name

    if dialect == 'sqlite':
        existing = [r[1] for r in db.session.execute(text(f'PRAGMA table_info({table_name})')).fetchall()]
        for col, col_sql in columns_sql.items():
            if col not in existing:
                db.session.execute(text(f'ALTER TABLE {table_name} ADD COLUMN {col_sql}'))
        db.session.commit()
        return

    if dialect in ('postgresql', 'postgres'):
        # Postgres supports ADD COLUMN IF NOT EXISTS (safe to run repeatedly).
        for _col, col_sql in columns_sql.items():
            db.session.execute(text(f'ALTER TABLE {table_name} ADD COLUMN IF NOT EXISTS {col_sql}'))
        db.session.commit()
        return


with app.app_context():
    db.create_all()

    # ---- Lightweight schema upgrade ----
    # create_all() does not add new columns to existing tables. Columns added
    # after the first release are listed here.
    try:
        _ensure_columns('users', {
            'streak': "streak INTEGER NOT NULL DEFAULT 0",
            'last_check_in': "last_check_in TIMESTAMP",
            'package_expires_at': "package_expires_at TIMESTAMP",
            'kyc_status': "kyc_status VARCHAR(20) NOT NULL DEFAULT 'NOT_SUBMITTED'",
            'last_login_at': "last_login_at TIMESTAMP",
            'avatar': "avatar VARCHAR(500)",
            'phone': "phone VARCHAR(20)",
            'language': "language VARCHAR(5) NOT NULL DEFAULT 'en'",
            'timezone': "timezone VARCHAR(50) NOT NULL DEFAULT 'UTC'",
            'notifications_enabled': "notifications_enabled BOOLEAN NOT NULL DEFAULT TRUE",
            'email_notifications': "email_notifications BOOLEAN NOT NULL DEFAULT TRUE",
        })
        _ensure_columns('tasks', {
            'task_link': 'task_link VARCHAR(500)',
            'cooldown_minutes': 'cooldown_minutes INTEGER NOT NULL DEFAULT 0',
        })
        _ensure_columns('withdrawals', {
            'points': 'points INTEGER NOT NULL DEFAULT 0',
            'transaction_ref': 'transaction_ref VARCHAR(120)',
        })
    except Exception:
        # If the DB user lacks privileges, keep serving; a real migration is still needed.
        db.session.rollback()
        app.logger.exception("Schema column check failed")


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print("=" * 60)
    print("EarnHub Rewards Platform API")
    print("=" * 60)
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1]}")
    print(f"Rate limiting: {'on' if app.config['RATELIMIT_ENABLED'] else 'off'}")
    print(f"Health: http://localhost:{port}/api/health")
    print("=" * 60)

    app.run(host='0.0.0.0', port=port, debug=debug)
