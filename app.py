from __future__ import annotations
import logging
import os
from collections import Counter
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Optional

from flask import (
    Flask,
    flash,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from jinja2 import DictLoader
from sqlalchemy import create_engine

from account_service import (
    AUTH_FAILED,
    BOOTSTRAP_INCOMPLETE,
    INVALID,
    MIN_PASSWORD_LENGTH,
    SIGNED_IN,
    STAFF_ROLES,
    RegistrationForm,
    RegistrationOutcome,
    SupabaseAuthClient,
    register_account,
    safe_next_path,
    session_user,
    sign_in,
)
from ticket_service import (
    DEFAULT_TITLE,
    PRIORITIES,
    TICKETS_TABLE,
    NotFoundError,
    ValidationError,
    create_ticket,
    lookup_tickets,
    normalize_ticket,
)
from ticket_store import (
    SqlStore,
    StoreError,
    SupabaseStore,
    TicketStore,
    create_local_schema,
)

# --------------------------------------------------------------------------------------
# Flask app config
# --------------------------------------------------------------------------------------
app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("FLASK_SECRET", "dev-secret")
app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # ticket payloads are small
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(level=LOG_LEVEL)
# basicConfig leaves the level alone when a host already installed handlers
logging.getLogger().setLevel(LOG_LEVEL)
app.logger.setLevel(LOG_LEVEL)


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


APP_ENV = os.getenv("APP_ENV", "development").strip().lower()
ENABLE_STAFF_BOOTSTRAP = _env_flag("ENABLE_STAFF_BOOTSTRAP")
TICKET_STRICT_SCHEMA = _env_flag("TICKET_STRICT_SCHEMA")

# Supabase project details come from environment variables
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
try:
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
except ValueError:
    HTTP_TIMEOUT = 10.0


def _candidate_path_from_env(value: str) -> Path | None:
    """Return a filesystem path for supported SQLite URI formats."""

    cleaned = value.strip()
    if not cleaned or cleaned == ":memory:":
        return None

    if cleaned.startswith("sqlite:///"):
        cleaned = cleaned[len("sqlite:///"):]
    elif cleaned.startswith("sqlite://"):
        cleaned = cleaned[len("sqlite://"):]

    if cleaned == ":memory:":
        return None

    if cleaned.startswith("file:") or "://" in cleaned:
        # Raw SQLite connection string (e.g., file::memory:?cache=shared)
        return None

    if "?" in cleaned:
        cleaned = cleaned.split("?", 1)[0]

    return Path(cleaned)


def _resolve_db_path(
    env_override: str | None = None,
    data_dir_override: str | None = None,
) -> str:
    """Determine the local SQLite location and ensure the directory exists."""

    env_value = env_override if env_override is not None else os.environ.get("TICKETS_DB")
    data_dir = data_dir_override if data_dir_override is not None else os.environ.get("INSIGHTA_DATA_DIR")
    base_dir = Path(data_dir) if data_dir else Path(app.instance_path)

    if env_value:
        path_candidate = _candidate_path_from_env(env_value)
        if path_candidate is None:
            return env_value
        candidate = path_candidate.expanduser()
    else:
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / "tickets.db").expanduser()

    if not candidate.is_absolute():
        base_dir.mkdir(parents=True, exist_ok=True)
        candidate = (base_dir / candidate).resolve()

    candidate.parent.mkdir(parents=True, exist_ok=True)
    return str(candidate)


DB_PATH = _resolve_db_path()
DATABASE_URL = os.getenv("DATABASE_URL")


# --------------------------------------------------------------------------------------
# Store / auth helpers
# --------------------------------------------------------------------------------------


def build_store() -> TicketStore:
    store_key = SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY
    if SUPABASE_URL and store_key:
        app.logger.info("Ticket store: Supabase @ %s", SUPABASE_URL)
        return SupabaseStore(SUPABASE_URL, store_key, timeout=HTTP_TIMEOUT)

    if DATABASE_URL:
        engine = create_engine(DATABASE_URL, pool_pre_ping=True)
    else:
        engine = create_engine(
            f"sqlite:///{DB_PATH}",
            connect_args={"check_same_thread": False},
        )
    create_local_schema(engine)
    app.logger.info("Ticket store: %s", "SQL @ DATABASE_URL" if DATABASE_URL else f"SQLite @ {DB_PATH}")
    return SqlStore(engine)


def get_store() -> TicketStore:
    store = app.config.get("TICKET_STORE")
    if store is None:
        store = build_store()
        app.config["TICKET_STORE"] = store
    return store


def get_auth_client():
    client = app.config.get("AUTH_CLIENT")
    if client is None:
        client = SupabaseAuthClient(
            SUPABASE_URL or "",
            SUPABASE_ANON_KEY or "",
            timeout=HTTP_TIMEOUT,
        )
        app.config["AUTH_CLIENT"] = client
    return client


def staff_bootstrap_enabled() -> bool:
    return ENABLE_STAFF_BOOTSTRAP and APP_ENV != "production"


def current_user() -> dict:
    return session.get("user") or {}


def is_staff_user() -> bool:
    return current_user().get("role") in STAFF_ROLES


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get("user"):
            return redirect(url_for("login", next=request.path))
        return view_func(*args, **kwargs)
    return wrapper


def staff_required(view_func):
    @login_required
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not is_staff_user():
            flash("Staff access is required for that page.")
            return redirect(url_for("home"))
        return view_func(*args, **kwargs)
    return wrapper


def _redirect_with(endpoint: str, **params):
    query = {key: value for key, value in params.items() if value not in (None, "")}
    return redirect(url_for(endpoint, **query))


# --------------------------------------------------------------------------------------
# Constants / helpers
# --------------------------------------------------------------------------------------
STAFF_HOME_ENDPOINT = "admin_overview"
ADMIN_TABS = [
    ("/admin", "Overview"),
    ("/admin/statistics", "Statistics"),
]
ADMIN_PAGE_SIZE = 25
STATISTICS_SAMPLE_SIZE = 500
PRIORITY_BADGES = {
    "urgent": "badge text-bg-danger",
    "high": "badge text-bg-warning",
    "medium": "badge text-bg-info",
    "low": "badge text-bg-secondary",
}


def admin_nav_links(path: str, query_string: str = "") -> list[dict[str, object]]:
    """Tabs for the admin shell; each keeps the current query string."""
    suffix = f"?{query_string}" if query_string else ""
    return [
        {"label": label, "href": f"{href}{suffix}", "active": path == href}
        for href, label in ADMIN_TABS
    ]


def _admin_filters() -> dict[str, str]:
    filters = {}
    for name in ("status", "priority"):
        value = (request.args.get(name) or "").strip()
        if value:
            filters[name] = value
    return filters


def _load_admin_tickets(limit: int) -> list[dict]:
    try:
        rows = get_store().select(
            TICKETS_TABLE,
            _admin_filters(),
            order_by="created_at",
            descending=True,
            limit=limit,
        )
    except StoreError as exc:
        app.logger.warning("Admin ticket listing failed: %s", exc)
        flash("Tickets are unavailable right now.")
        return []
    return [normalize_ticket(row) for row in rows]


def format_timestamp(value: Optional[str]) -> str:
    if not value:
        return "—"
    try:
        if isinstance(value, datetime):
            dt = value
        else:
            text = str(value)
            # Normalize trailing Z to be ISO compliant
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
        return dt.strftime("%b %d, %Y %I:%M %p UTC")
    except ValueError:
        return str(value)

# --------------------------------------------------------------------------------------
# Templates (kept inline for single-file simplicity)
# --------------------------------------------------------------------------------------
BASE_HTML = """
<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Insighta</title>
  <meta name="description" content="AI-Powered Complaint Resolution for Insurance">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  <link href="https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css" rel="stylesheet">
  <style>
    :root {
      --in-blue: #2563eb;
      --in-blue-dark: #1d4ed8;
      --in-ink: #111827;
      --in-muted: #6b7280;
      --in-surface: #ffffff;
      --in-bg: #f8fafc;
    }

    body { background: var(--in-bg); color: var(--in-ink); }
    a { color: var(--in-blue); text-decoration: none; }
    a:hover { color: var(--in-blue-dark); }

    .navbar-brand { display: flex; align-items: center; gap: 0.5rem; font-weight: 700; color: var(--in-ink); }
    .nav-link.active { color: var(--in-blue) !important; font-weight: 600; }
    .nav-btn { background: var(--in-blue); color: #fff !important; border-radius: 8px; padding: 0.4rem 1rem; }

    .hero { text-align: center; padding: 5rem 1rem 4rem; }
    .hero h1 { font-size: clamp(2rem, 3vw + 1rem, 3.25rem); font-weight: 700; }
    .hero .highlight { color: var(--in-blue); }
    .hero p { color: var(--in-muted); max-width: 640px; margin: 1rem auto 2rem; font-size: 1.1rem; }

    .surface-card {
      background: var(--in-surface);
      border-radius: 14px;
      border: 1px solid rgba(17, 24, 39, 0.06);
      box-shadow: 0 12px 28px rgba(17, 24, 39, 0.06);
    }

    .form-narrow { max-width: 560px; margin: 0 auto; }

    .admin-tabs { display: flex; gap: 0.5rem; border-bottom: 1px solid #e5e7eb; margin-bottom: 1.5rem; }
    .admin-tab { padding: 0.6rem 1rem; color: var(--in-muted); border-bottom: 2px solid transparent; }
    .admin-tab.active { color: var(--in-blue); border-bottom-color: var(--in-blue); font-weight: 600; }

    .flash-message { background: #eff6ff; border: 1px solid #bfdbfe; border-radius: 10px; padding: 0.75rem 1rem; white-space: pre-line; }
  </style>
</head>
<body>
  <nav class="navbar navbar-expand bg-white border-bottom px-4">
    <a class="navbar-brand" href="{{ url_for('home') }}">
      <i class="bi bi-shield-check text-primary fs-4"></i>
      Insighta
    </a>
    <div class="navbar-nav ms-auto align-items-center gap-2">
      <a class="nav-link {% if request.endpoint == 'about' %}active{% endif %}" href="{{ url_for('about') }}">About</a>
      <a class="nav-link {% if request.endpoint == 'submit' %}active{% endif %}" href="{{ url_for('submit') }}">Submit</a>
      <a class="nav-link {% if request.endpoint == 'track' %}active{% endif %}" href="{{ url_for('track') }}">Track</a>
      {% if session.get('user') %}
        {% if session['user'].get('role') in staff_roles %}
          <a class="nav-link {% if request.endpoint in ('admin_overview', 'admin_statistics') %}active{% endif %}" href="{{ url_for('admin_overview') }}">Admin</a>
        {% endif %}
        <span class="text-secondary small">Signed in as <strong>{{ session['user'].get('name') or session['user'].get('email') }}</strong></span>
        <a class="btn btn-outline-dark btn-sm" href="{{ url_for('logout') }}">Logout</a>
      {% else %}
        <a class="nav-link {% if request.endpoint == 'login' %}active{% endif %}" href="{{ url_for('login') }}">Login</a>
        <a class="nav-btn" href="{{ url_for('register') }}">Register</a>
      {% endif %}
    </div>
  </nav>
  <main class="container py-4">
    {% with messages = get_flashed_messages() %}
      {% if messages %}
        <div class="flash-message mb-4">{{ messages|join('\n') }}</div>
      {% endif %}
    {% endwith %}
    {% block content %}{% endblock %}
  </main>
<script src="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/js/bootstrap.bundle.min.js"></script>
</body>
</html>
"""


HOME_HTML = """
{% extends 'base.html' %}
{% block content %}
<section class="hero">
  <h1>AI-Powered Complaint Resolution <span class="highlight">for Insurance</span></h1>
  <p>Submit, track, and resolve insurance complaints with the help of intelligent classification.
     Insighta automatically prioritizes your tickets so issues get resolved faster.</p>
  <div class="d-flex justify-content-center flex-wrap gap-3">
    <a class="btn btn-primary btn-lg" href="{{ url_for('submit') }}">Submit a Complaint</a>
    <a class="btn btn-outline-primary btn-lg" href="{{ url_for('track') }}">Track Your Ticket</a>
  </div>
</section>
{% endblock %}
"""


ABOUT_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="surface-card p-4 p-md-5 form-narrow">
  <h1 class="h3 fw-semibold mb-3">About Insighta</h1>
  <p class="text-secondary">Insighta helps policyholders raise insurance complaints and follow them through to
     resolution. Every complaint receives a reference you can use to check its status at any time.</p>
  <p class="text-secondary mb-0">Support staff work the queue from the admin workspace.</p>
</div>
{% endblock %}
"""


LOGIN_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="form-narrow" style="max-width: 520px;">
  <h1 class="h3 mb-2">Login</h1>
  <p class="text-secondary mb-3">Sign in with your Insighta account to access protected pages.</p>

  {% if message %}<p class="text-success mb-3">{{ message }}</p>{% endif %}
  {% if error %}<p class="text-danger mb-3">{{ error }}</p>{% endif %}

  <form method="post" action="{{ url_for('login') }}" class="d-grid gap-3">
    <input type="hidden" name="next" value="{{ next_path }}">
    <label class="d-grid gap-1">
      <span>Email</span>
      <input class="form-control" name="email" type="email" required autocomplete="email" value="{{ email }}">
    </label>
    <label class="d-grid gap-1">
      <span>Password</span>
      <input class="form-control" name="password" type="password" required autocomplete="current-password">
    </label>
    <button class="btn btn-primary" type="submit">Sign In</button>
  </form>

  <p class="mt-3 text-secondary">Need an account? <a href="{{ url_for('register', next=next_path) }}">Register here</a></p>
</div>
{% endblock %}
"""


REGISTER_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="form-narrow">
  <h1 class="h3 mb-2">Register</h1>
  <p class="text-secondary mb-3">Create a customer account. Staff accounts are provisioned by Admins from the Admin dashboard.</p>

  {% if error %}<p class="text-danger mb-3">{{ error }}</p>{% endif %}

  <form method="post" action="{{ url_for('register') }}" class="d-grid gap-3">
    <input type="hidden" name="next" value="{{ next_path }}">
    <div class="row g-3">
      <label class="col-6 d-grid gap-1">
        <span>First name</span>
        <input class="form-control" name="firstName" type="text" autocomplete="given-name">
      </label>
      <label class="col-6 d-grid gap-1">
        <span>Last name</span>
        <input class="form-control" name="lastName" type="text" autocomplete="family-name">
      </label>
    </div>
    <label class="d-grid gap-1">
      <span>Email</span>
      <input class="form-control" name="email" type="email" required autocomplete="email">
    </label>
    <label class="d-grid gap-1">
      <span>Password</span>
      <input class="form-control" name="password" type="password" required minlength="{{ min_password }}" autocomplete="new-password">
    </label>
    <label class="d-grid gap-1">
      <span>Confirm password</span>
      <input class="form-control" name="confirmPassword" type="password" required minlength="{{ min_password }}" autocomplete="new-password">
    </label>
    <button class="btn btn-primary" type="submit">Create Account</button>
  </form>

  <p class="mt-3 text-secondary">Already have an account? <a href="{{ url_for('login', next=next_path) }}">Login</a></p>
</div>
{% endblock %}
"""


SUBMIT_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="surface-card p-4 p-md-5 form-narrow">
  <h1 class="h3 fw-semibold mb-2">Submit a Complaint</h1>
  <p class="text-secondary mb-4">Tell us what happened. We'll give you a reference to track progress.</p>
  <form method="post" action="{{ url_for('submit') }}" class="d-grid gap-3">
    <label class="d-grid gap-1">
      <span>Title</span>
      <input class="form-control" name="title" type="text" placeholder="{{ default_title }}">
    </label>
    <label class="d-grid gap-1">
      <span>Description <span class="text-danger">*</span></span>
      <textarea class="form-control" name="description" rows="5" required></textarea>
    </label>
    <div class="row g-3">
      <label class="col-md-6 d-grid gap-1">
        <span>Category</span>
        <input class="form-control" name="category" type="text" placeholder="Claims, Billing, ...">
      </label>
      <label class="col-md-6 d-grid gap-1">
        <span>Priority</span>
        <select class="form-select" name="priority">
          <option value="">Let us decide</option>
          {% for p in priorities %}<option value="{{ p }}">{{ p|capitalize }}</option>{% endfor %}
        </select>
      </label>
    </div>
    <div class="row g-3">
      <label class="col-md-6 d-grid gap-1">
        <span>Your name</span>
        <input class="form-control" name="customerName" type="text" autocomplete="name">
      </label>
      <label class="col-md-6 d-grid gap-1">
        <span>Your email</span>
        <input class="form-control" name="customerEmail" type="email" autocomplete="email">
      </label>
    </div>
    <label class="d-grid gap-1">
      <span>Policy number</span>
      <input class="form-control" name="policyNumber" type="text">
    </label>
    <button class="btn btn-primary" type="submit">Submit Complaint</button>
  </form>
</div>
{% endblock %}
"""


TICKET_TABLE_HTML = """
<div class="table-responsive">
  <table class="table align-middle mb-0">
    <thead>
      <tr><th>Reference</th><th>Title</th><th>Status</th><th>Priority</th><th>Customer</th><th>Created</th></tr>
    </thead>
    <tbody>
      {% for t in tickets %}
      <tr>
        <td class="fw-semibold">{{ t.reference }}</td>
        <td>{{ t.title or '—' }}</td>
        <td>{{ t.status or '—' }}</td>
        <td>{% if t.priority %}<span class="{{ priority_badges.get(t.priority, 'badge text-bg-light') }}">{{ t.priority }}</span>{% else %}—{% endif %}</td>
        <td>{{ t.customerName or t.customerEmail or '—' }}</td>
        <td class="text-secondary small">{{ format_ts(t.createdAt) }}</td>
      </tr>
      {% endfor %}
    </tbody>
  </table>
</div>
"""


TRACK_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="surface-card p-4 p-md-5 mb-4">
  <h1 class="h3 fw-semibold mb-2">Track Your Ticket</h1>
  <p class="text-secondary mb-4">Search by reference, ticket id, email, or policy number.</p>
  <form method="get" action="{{ url_for('track') }}" class="row g-3">
    <div class="col-md-3"><input class="form-control" name="reference" placeholder="Reference" value="{{ args.get('reference', '') }}"></div>
    <div class="col-md-2"><input class="form-control" name="ticketId" placeholder="Ticket id" value="{{ args.get('ticketId', '') }}"></div>
    <div class="col-md-3"><input class="form-control" name="email" type="email" placeholder="Email" value="{{ args.get('email', '') }}"></div>
    <div class="col-md-2"><input class="form-control" name="policyNumber" placeholder="Policy number" value="{{ args.get('policyNumber', '') }}"></div>
    <div class="col-md-2 d-grid"><button class="btn btn-primary" type="submit">Search</button></div>
  </form>
</div>
{% if error %}
  <p class="text-danger">{{ error }}</p>
{% elif tickets %}
  <div class="surface-card p-3">{% include 'ticket_table.html' %}</div>
{% endif %}
{% endblock %}
"""


ADMIN_BASE_HTML = """
{% extends 'base.html' %}
{% block content %}
<div class="d-flex align-items-center justify-content-between mb-3">
  <h1 class="h3 fw-semibold mb-0">Admin workspace</h1>
  <form method="get" class="d-flex gap-2">
    <input class="form-control form-control-sm" name="status" placeholder="Status" value="{{ request.args.get('status', '') }}">
    <select class="form-select form-select-sm" name="priority">
      <option value="">Any priority</option>
      {% for p in priorities %}<option value="{{ p }}" {% if request.args.get('priority') == p %}selected{% endif %}>{{ p|capitalize }}</option>{% endfor %}
    </select>
    <button class="btn btn-sm btn-outline-primary" type="submit">Filter</button>
  </form>
</div>
<nav class="admin-tabs" aria-label="Admin workspace sections">
  {% for tab in admin_nav %}
    <a class="admin-tab {% if tab.active %}active{% endif %}" href="{{ tab.href }}">{{ tab.label }}</a>
  {% endfor %}
</nav>
{% block admin_content %}{% endblock %}
{% endblock %}
"""


ADMIN_OVERVIEW_HTML = """
{% extends 'admin_base.html' %}
{% block admin_content %}
{% if tickets %}
  <div class="surface-card p-3">{% include 'ticket_table.html' %}</div>
{% else %}
  <p class="text-secondary">No tickets to show.</p>
{% endif %}
{% endblock %}
"""


ADMIN_STATISTICS_HTML = """
{% extends 'admin_base.html' %}
{% block admin_content %}
<p class="text-secondary">Based on the {{ total }} most recent tickets.</p>
<div class="row g-4">
  {% for heading, counts in breakdowns %}
  <div class="col-md-4">
    <div class="surface-card p-4 h-100">
      <h2 class="h6 text-uppercase text-secondary fw-semibold mb-3">{{ heading }}</h2>
      {% for label, count in counts %}
        <div class="d-flex justify-content-between border-bottom py-1"><span>{{ label }}</span><strong>{{ count }}</strong></div>
      {% else %}
        <p class="text-secondary mb-0">No data.</p>
      {% endfor %}
    </div>
  </div>
  {% endfor %}
</div>
{% endblock %}
"""


@app.context_processor
def _inject_template_globals():
    return {"staff_roles": STAFF_ROLES}


# --------------------------------------------------------------------------------------
# Routes
# --------------------------------------------------------------------------------------

@app.route("/")
def home():
    return render_template_string(HOME_HTML)


@app.route("/about")
def about():
    return render_template_string(ABOUT_HTML)


@app.route("/healthz")
def health():
    return jsonify({"status": "ok"})


@app.route("/submit", methods=["GET", "POST"])
def submit():
    if request.method == "POST":
        payload = {
            name: request.form.get(name)
            for name in (
                "title", "description", "category", "priority",
                "customerName", "customerEmail", "policyNumber",
            )
        }
        try:
            ticket = create_ticket(get_store(), payload, strict=TICKET_STRICT_SCHEMA)
        except ValidationError as exc:
            flash(str(exc))
            return redirect(url_for("submit"))
        except StoreError as exc:
            app.logger.warning("Complaint submission failed: %s", exc)
            flash("We could not save your complaint. Please try again shortly.")
            return redirect(url_for("submit"))

        flash(f"Ticket created. Your reference is {ticket['reference']}.")
        return redirect(url_for("track", reference=ticket["reference"]))

    return render_template_string(
        SUBMIT_HTML,
        priorities=PRIORITIES,
        default_title=DEFAULT_TITLE,
    )


@app.route("/track")
def track():
    tickets: list[dict] = []
    error = None
    if any((request.args.get(name) or "").strip() for name in ("reference", "ticketId", "email", "policyNumber")):
        try:
            tickets = lookup_tickets(get_store(), request.args)
        except (ValidationError, NotFoundError) as exc:
            error = str(exc)
        except StoreError as exc:
            app.logger.warning("Ticket tracking lookup failed: %s", exc)
            error = "Ticket lookup is unavailable right now."
    return render_template_string(
        TRACK_HTML,
        args=request.args,
        tickets=tickets,
        error=error,
        priority_badges=PRIORITY_BADGES,
        format_ts=format_timestamp,
    )


# --------------------------------------------------------------------------------------
# Ticket API
# --------------------------------------------------------------------------------------

@app.route("/api/tickets", methods=["POST"])
def api_create_ticket():
    payload = request.get_json(force=True, silent=True)
    try:
        ticket = create_ticket(get_store(), payload, strict=TICKET_STRICT_SCHEMA)
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except StoreError as exc:
        app.logger.warning("Ticket creation failed: %s", exc)
        return jsonify({"error": "Failed to create ticket.", "details": str(exc)}), 500

    return jsonify({"message": "Ticket created successfully.", "ticket": ticket}), 201


@app.route("/api/tickets", methods=["GET"])
def api_lookup_tickets():
    try:
        tickets = lookup_tickets(get_store(), request.args)
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except StoreError as exc:
        app.logger.warning("Ticket lookup failed: %s", exc)
        return jsonify({"error": "Failed to look up tickets.", "details": str(exc)}), 500

    return jsonify({"count": len(tickets), "tickets": tickets})


# --------------------------------------------------------------------------------------
# Admin workspace
# --------------------------------------------------------------------------------------

def _render_admin(template: str, **context):
    return render_template_string(
        template,
        admin_nav=admin_nav_links(request.path, request.query_string.decode("utf-8", "replace")),
        priorities=PRIORITIES,
        priority_badges=PRIORITY_BADGES,
        format_ts=format_timestamp,
        **context,
    )


@app.route("/admin")
@staff_required
def admin_overview():
    return _render_admin(ADMIN_OVERVIEW_HTML, tickets=_load_admin_tickets(ADMIN_PAGE_SIZE))


@app.route("/admin/statistics")
@staff_required
def admin_statistics():
    tickets = _load_admin_tickets(STATISTICS_SAMPLE_SIZE)
    breakdowns = []
    for heading, field in (("Status", "status"), ("Priority", "priority"), ("Category", "category")):
        counts = Counter((ticket.get(field) or "Unspecified") for ticket in tickets)
        breakdowns.append((heading, counts.most_common()))
    return _render_admin(ADMIN_STATISTICS_HTML, total=len(tickets), breakdowns=breakdowns)


# --------------------------------------------------------------------------------------
# Account routes
# --------------------------------------------------------------------------------------

def _registration_response(outcome: RegistrationOutcome):
    if outcome.status in (INVALID, AUTH_FAILED):
        return _redirect_with("register", error=outcome.message, next=outcome.next_path)
    if outcome.status == BOOTSTRAP_INCOMPLETE:
        return _redirect_with(
            "login",
            error=outcome.message,
            next=outcome.next_path,
            email=outcome.email,
        )
    if outcome.status == SIGNED_IN:
        session["user"] = session_user(outcome)
        flash(outcome.message)
        if outcome.staff and outcome.next_path == "/":
            return redirect(url_for(STAFF_HOME_ENDPOINT))
        return redirect(outcome.next_path)
    return _redirect_with(
        "login",
        message=outcome.message,
        next=outcome.next_path,
        email=outcome.email,
    )


@app.route("/register", methods=["GET", "POST"])
def register():
    if request.method == "POST":
        form = RegistrationForm.from_form(request.form)
        bootstrap = staff_bootstrap_enabled()
        outcome = register_account(
            form,
            get_auth_client(),
            store=get_store() if bootstrap else None,
            bootstrap_staff=bootstrap,
        )
        return _registration_response(outcome)

    return render_template_string(
        REGISTER_HTML,
        error=request.args.get("error", ""),
        next_path=safe_next_path(request.args.get("next") or "/"),
        min_password=MIN_PASSWORD_LENGTH,
    )


@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        outcome = sign_in(request.form, get_auth_client(), get_store())
        if not outcome.ok:
            return _redirect_with(
                "login",
                error=outcome.message,
                next=outcome.next_path,
                email=(request.form.get("email") or "").strip(),
            )
        session["user"] = outcome.user
        flash(outcome.message)
        return redirect(outcome.next_path)

    return render_template_string(
        LOGIN_HTML,
        message=request.args.get("message", ""),
        error=request.args.get("error", ""),
        email=request.args.get("email", ""),
        next_path=safe_next_path(request.args.get("next") or "/"),
    )


@app.route("/logout")
def logout():
    session.clear()
    flash("Signed out.")
    return redirect(url_for("home"))

# --------------------------------------------------------------------------------------
# Jinja loader (since we keep templates inline in this single file)
# --------------------------------------------------------------------------------------
app.jinja_loader = DictLoader({
    "base.html": BASE_HTML,
    "home.html": HOME_HTML,
    "about.html": ABOUT_HTML,
    "login.html": LOGIN_HTML,
    "register.html": REGISTER_HTML,
    "submit.html": SUBMIT_HTML,
    "track.html": TRACK_HTML,
    "ticket_table.html": TICKET_TABLE_HTML,
    "admin_base.html": ADMIN_BASE_HTML,
    "admin_overview.html": ADMIN_OVERVIEW_HTML,
    "admin_statistics.html": ADMIN_STATISTICS_HTML,
})

# --------------------------------------------------------------------------------------
# Entrypoint
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    # Build the store up front so schema problems surface at startup
    with app.app_context():
        get_store()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
