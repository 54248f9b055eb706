import hashlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import requests

import app as app_module
from app import (
    AddonCatalogItem,
    AdminUser,
    BillingProduct,
    Client,
    ClientAddonRequest,
    ContactSubmission,
    Deposit,
    Invoice,
    InvoiceDiscount,
    Milestone,
    NotificationConfig,
    PaymentEvent,
    Project,
    SmsMessage,
    StripeConfig,
    Subscription,
    TwilioConfig,
    WebsiteAnalysis,
    analyze_design_era,
    analyze_mobile_preview,
    analyze_trust_signals,
    analyze_visual,
    build_local_analysis,
    calculate_revenue_metrics,
    calculate_sla_due_date,
    calculate_sla_metrics,
    compose_overall_score,
    create_app,
    db,
    ensure_aware,
    evaluate_client_access,
    get_effective_smtp_settings,
    grade_for_score,
    normalize_phone_number,
    normalize_website_url,
    parse_amount_to_cents,
    recommendation_tier,
    run_billing_automation,
    scan_html,
    score_core_web_vitals,
    score_local_relevance,
    score_seo_structure,
    send_invoice_reminders,
)


class StripeStub:
    class Customer:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id=f"cus_{len(cls.created)}")

    class Subscription:
        created: list[dict] = []
        modified: list[tuple[str, dict]] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(
                id="sub_new",
                status="incomplete",
                current_period_end=None,
                latest_invoice=SimpleNamespace(
                    hosted_invoice_url="https://pay.example.com/in_sub",
                    payment_intent=SimpleNamespace(status="requires_action"),
                ),
            )

        @classmethod
        def modify(cls, subscription_id, **kwargs):
            cls.modified.append((subscription_id, kwargs))
            return SimpleNamespace(
                id=subscription_id,
                cancel_at_period_end=True,
                current_period_end=1767225600,
            )

    class InvoiceItem:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id=f"ii_{len(cls.created)}")

    class Invoice:
        created: list[dict] = []
        modified: list[tuple[str, dict]] = []
        amount_due = 15000

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id="in_test", status="draft")

        @classmethod
        def send_invoice(cls, invoice_id):
            return SimpleNamespace(
                id=invoice_id,
                status="open",
                hosted_invoice_url=f"https://invoice.example.com/{invoice_id}",
                invoice_pdf=f"https://invoice.example.com/{invoice_id}.pdf",
                amount_due=cls.amount_due,
                currency="usd",
                due_date=1767225600,
                metadata={},
            )

        @classmethod
        def modify(cls, invoice_id, **kwargs):
            cls.modified.append((invoice_id, kwargs))
            return SimpleNamespace(id=invoice_id)

    class Coupon:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id=kwargs["id"])

    class Product:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            return SimpleNamespace(id="prod_1", default_price="price_1")

    class checkout:
        class Session:
            created: list[dict] = []

            @classmethod
            def create(cls, **kwargs):
                cls.created.append(kwargs)
                session_id = f"cs_{len(cls.created)}"
                return SimpleNamespace(
                    id=session_id, url=f"https://checkout.example.com/{session_id}"
                )

            @staticmethod
            def retrieve(session_id):
                return SimpleNamespace(
                    id=session_id,
                    payment_status="paid",
                    customer_details=SimpleNamespace(email="buyer@example.com"),
                    metadata={"business_name": "Acme Plumbing"},
                )

    class billing_portal:
        class Session:
            @staticmethod
            def create(**kwargs):
                return SimpleNamespace(url="https://billing.example.com/session")

    class Event:
        next_event = None

        @classmethod
        def construct_from(cls, payload, api_key):
            return cls.next_event

    class Webhook:
        calls: list[tuple] = []

        @classmethod
        def construct_event(cls, payload, sig_header, secret):
            cls.calls.append((payload, sig_header, secret))
            if sig_header != "t=1,v1=valid":
                raise ValueError("No signatures found matching the expected signature")
            return StripeStub.Event.next_event

    RequestsClient = staticmethod(lambda: "requests-client")
    api_key = None
    default_http_client = None

    def reset(self):
        self.Customer.created = []
        self.Subscription.created = []
        self.Subscription.modified = []
        self.InvoiceItem.created = []
        self.Invoice.created = []
        self.Invoice.modified = []
        self.Invoice.amount_due = 15000
        self.Coupon.created = []
        self.Product.created = []
        self.checkout.Session.created = []
        self.Event.next_event = None
        self.Webhook.calls = []
        self.api_key = None
        self.default_http_client = None


def install_stripe_stub(flask_app, monkeypatch, stub=None):
    stub = stub or StripeStub()
    stub.reset()
    monkeypatch.setattr(app_module, "stripe", stub, raising=False)
    monkeypatch.setattr(app_module, "StripeError", Exception, raising=False)
    monkeypatch.setattr(app_module, "SignatureVerificationError", Exception, raising=False)
    flask_app.config["STRIPE_SECRET_KEY"] = "sk_test"
    flask_app.config["STRIPE_PUBLISHABLE_KEY"] = "pk_test"
    flask_app.config["STRIPE_WEBHOOK_SECRET"] = None
    return stub


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


TEST_ADMIN_USERNAME = "sys-admin"
TEST_ADMIN_PASSWORD = "SecurePass123!"

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def app(tmp_path):
    test_db_path = tmp_path / "test.db"

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "ADMIN_USERNAME": TEST_ADMIN_USERNAME,
            "ADMIN_PASSWORD": TEST_ADMIN_PASSWORD,
            "ADMIN_EMAIL": "ops@example.com",
            "CONTACT_EMAIL": "hello@agency.example.com",
            "STRIPE_SECRET_KEY": None,
            "STRIPE_PUBLISHABLE_KEY": None,
            "STRIPE_WEBHOOK_SECRET": None,
            "STRIPE_CUSTOMER_PORTAL_RETURN_URL": "https://agency.example.com/portal",
            "TWILIO_ACCOUNT_SID": None,
            "TWILIO_AUTH_TOKEN": None,
            "TWILIO_PHONE_NUMBER": None,
            "ANALYZER_USE_MOCK": False,
        }
    )

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_emails(app):
    outbox: list[tuple[str, str, str]] = []

    def _sender(recipient, subject, body):
        outbox.append((recipient, subject, body))
        return True

    app.config["EMAIL_SENDER"] = _sender
    return outbox


def login_admin(client):
    return client.post(
        "/login",
        json={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
    )


def make_client(app, **overrides) -> int:
    values = {
        "business_name": "Acme Plumbing",
        "email": "owner@acme.example.com",
        "phone": "205-555-0100",
        "status": "active",
    }
    values.update(overrides)
    with app.app_context():
        record = Client(**values)
        db.session.add(record)
        db.session.commit()
        return record.id


def make_invoice(app, client_id: int, **overrides) -> int:
    values = {
        "client_id": client_id,
        "stripe_invoice_id": "in_1",
        "status": "open",
        "amount_due": 5000,
        "hosted_invoice_url": "https://invoice.example.com/in_1",
    }
    values.update(overrides)
    with app.app_context():
        invoice = Invoice(**values)
        db.session.add(invoice)
        db.session.commit()
        return invoice.id


def post_webhook(client, stub, event):
    stub.Event.next_event = event
    return client.post("/stripe/webhook", data="{}", content_type="application/json")


SAMPLE_HTML = """
<html>
  <head>
    <title>Joe's Plumbing</title>
    <meta name="description" content="Emergency plumbing">
    <script type="application/ld+json">{"@type": "Plumber"}</script>
  </head>
  <body>
    <h1>Joe's Plumbing</h1>
    <p>Call (555) 123-4567 for emergency leak repair near me in our local area.</p>
    <img src="van.jpg" alt="Service van"><img src="team.jpg" alt="">
    <iframe src="https://www.google.com/maps/embed?pb=1"></iframe>
    <p>123 Main Street</p>
  </body>
</html>
"""

PAGESPEED_PAYLOAD = {
    "lighthouseResult": {
        "categories": {
            "performance": {"score": 0.91},
            "seo": {"score": 0.8},
            "accessibility": {"score": 0.75},
        },
        "audits": {
            "largest-contentful-paint": {"displayValue": "2.1 s"},
            "cumulative-layout-shift": {"displayValue": "0.05"},
            "max-potential-fid": {"numericValue": 80},
            "viewport": {"score": 1},
            "font-size": {"score": 1},
            "tap-targets": {"score": 0},
        },
    }
}


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_default_admin_is_seeded(app):
    with app.app_context():
        admin = AdminUser.query.filter_by(username=TEST_ADMIN_USERNAME).one()
        assert admin.check_password(TEST_ADMIN_PASSWORD)
        assert admin.email == "ops@example.com"


def test_admin_routes_require_login(client):
    response = client.get("/clients")
    assert response.status_code == 401
    assert response.get_json()["error"] == "Administrator login required."


def test_login_rejects_bad_password(client):
    response = client.post(
        "/login", json={"username": TEST_ADMIN_USERNAME, "password": "wrong"}
    )
    assert response.status_code == 401


def test_login_and_logout(client):
    assert login_admin(client).status_code == 200
    assert client.get("/clients").status_code == 200

    client.post("/logout")
    assert client.get("/clients").status_code == 401


def test_admin_cannot_delete_self(app, client):
    login_admin(client)
    with app.app_context():
        admin_id = AdminUser.query.filter_by(username=TEST_ADMIN_USERNAME).one().id

    created = client.post(
        "/admin/users",
        json={"username": "second", "email": "second@example.com", "password": "AnotherPass1"},
    )
    assert created.status_code == 201

    response = client.delete(f"/admin/users/{admin_id}")
    assert response.status_code == 400

    response = client.delete(f"/admin/users/{created.get_json()['id']}")
    assert response.status_code == 200


def test_create_admin_requires_long_password(client):
    login_admin(client)
    response = client.post("/admin/users", json={"username": "short", "password": "abc"})
    assert response.status_code == 400


def test_create_client_validates_and_lowercases_email(app, client):
    login_admin(client)

    missing = client.post("/clients", json={"email": "a@example.com"})
    assert missing.status_code == 400

    invalid = client.post("/clients", json={"business_name": "Acme", "email": "nope"})
    assert invalid.status_code == 400

    response = client.post(
        "/clients", json={"business_name": "Acme", "email": "Owner@Acme.Example.com"}
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["email"] == "owner@acme.example.com"
    assert payload["status"] == "onboarding"

    duplicate = client.post(
        "/clients", json={"business_name": "Acme 2", "email": "OWNER@acme.example.com"}
    )
    assert duplicate.status_code == 400


def test_update_and_delete_client(app, client):
    login_admin(client)
    client_id = make_client(app)

    response = client.patch(
        f"/clients/{client_id}", json={"status": "paused", "sms_opt_in": True}
    )
    assert response.status_code == 200
    assert response.get_json()["status"] == "paused"
    assert response.get_json()["sms_opt_in"] is True

    bad = client.patch(f"/clients/{client_id}", json={"status": "bogus"})
    assert bad.status_code == 400

    assert client.delete(f"/clients/{client_id}").status_code == 200
    assert client.get(f"/clients/{client_id}").status_code == 404


def test_missing_records_return_json_404(client):
    login_admin(client)
    response = client.get("/clients/999")
    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found."}


def test_create_project_computes_sla_due_date(app, client):
    login_admin(client)
    client_id = make_client(app)

    response = client.post(
        f"/clients/{client_id}/projects",
        json={
            "title": "New Website",
            "sla_days": 30,
            "sla_start_date": "2025-03-01T00:00:00+00:00",
        },
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["sla_due_date"] == "2025-03-31T00:00:00+00:00"
    assert payload["tasks"] == []
    assert payload["milestones"] == []
    assert payload["status"] == "draft"


def test_project_with_deposit_awaits_payment(app, client):
    login_admin(client)
    client_id = make_client(app)

    response = client.post(
        f"/clients/{client_id}/projects", json={"required_deposit_cents": 50000}
    )
    payload = response.get_json()
    assert payload["title"] == "Untitled Project"
    assert payload["status"] == "awaiting_deposit"
    assert payload["progress_percent"] == 0


def test_project_progress_is_validated(app, client):
    login_admin(client)
    client_id = make_client(app)
    project_id = client.post(f"/clients/{client_id}/projects", json={}).get_json()["id"]

    response = client.patch(f"/projects/{project_id}", json={"progress_percent": 140})
    assert response.status_code == 400


def test_non_finite_numbers_are_rejected(app, client):
    login_admin(client)
    client_id = make_client(app)
    project_id = client.post(f"/clients/{client_id}/projects", json={}).get_json()["id"]

    for raw in ("1e999", "-1e999", "nan"):
        response = client.patch(f"/projects/{project_id}", json={"progress_percent": raw})
        assert response.status_code == 400

    response = client.patch(
        f"/projects/{project_id}",
        data='{"sla_days": Infinity}',
        content_type="application/json",
    )
    assert response.status_code == 400

    assert app_module._coerce_int("1e999") is None
    assert app_module._coerce_int(float("inf")) is None
    assert app_module._coerce_float("-Infinity") is None
    assert app_module._coerce_float("12.5") == 12.5
    assert parse_amount_to_cents("NaN") is None
    assert parse_amount_to_cents("Infinity") is None


def test_tasks_and_milestones(app, client):
    login_admin(client)
    client_id = make_client(app)
    project_id = client.post(f"/clients/{client_id}/projects", json={}).get_json()["id"]

    task = client.post(
        f"/projects/{project_id}/tasks", json={"title": "Wireframes", "due_date": "2025-04-01"}
    )
    assert task.status_code == 201
    assert task.get_json()["due_date"] == "2025-04-01"

    task_id = task.get_json()["id"]
    updated = client.patch(f"/tasks/{task_id}", json={"status": "done"})
    assert updated.get_json()["status"] == "done"
    assert client.patch(f"/tasks/{task_id}", json={"status": "later"}).status_code == 400

    client.post(f"/projects/{project_id}/milestones", json={"name": "Design", "amount_cents": 100000})
    client.post(f"/projects/{project_id}/milestones", json={"name": "Launch", "amount_cents": 50000})

    project = client.get(f"/projects/{project_id}").get_json()
    assert [task["title"] for task in project["tasks"]] == ["Wireframes"]
    assert [milestone["name"] for milestone in project["milestones"]] == ["Design", "Launch"]
    assert [milestone["order_index"] for milestone in project["milestones"]] == [0, 1]

    assert client.delete(f"/tasks/{task_id}").status_code == 200
    assert client.get(f"/projects/{project_id}").get_json()["tasks"] == []


def test_sla_resume_extends_due_date(app, client):
    login_admin(client)
    client_id = make_client(app)
    start = datetime.now(timezone.utc) - timedelta(days=2)
    with app.app_context():
        project = Project(
            client_id=client_id,
            title="Rebrand",
            sla_days=20,
            sla_start_date=start,
            sla_due_date=calculate_sla_due_date(start, 20),
            sla_paused_at=datetime.now(timezone.utc) - timedelta(days=3, hours=1),
        )
        db.session.add(project)
        db.session.commit()
        project_id = project.id
        original_due = ensure_aware(project.sla_due_date)

    response = client.post(f"/projects/{project_id}/sla/resume")
    assert response.status_code == 200
    assert response.get_json()["sla_resume_offset_days"] == 3

    with app.app_context():
        project = db.session.get(Project, project_id)
        assert project.sla_paused_at is None
        assert ensure_aware(project.sla_due_date) == original_due + timedelta(days=3)

    assert client.post(f"/projects/{project_id}/sla/resume").status_code == 400
    assert client.post(f"/projects/{project_id}/sla/pause").status_code == 200
    assert client.post(f"/projects/{project_id}/sla/pause").status_code == 400


def test_sla_metrics_not_configured():
    assert calculate_sla_metrics(40, None, None, None, NOW) == {
        "sla_status": "on_track",
        "days_remaining": 0,
        "expected_progress": 0,
    }
    assert calculate_sla_metrics(40, 0, NOW, NOW, NOW)["expected_progress"] == 0


def test_sla_metrics_at_risk_and_on_track():
    start = NOW - timedelta(days=5)
    due = NOW + timedelta(days=5)

    at_risk = calculate_sla_metrics(20, 10, start, due, NOW)
    assert at_risk == {"sla_status": "at_risk", "days_remaining": 5, "expected_progress": 50}

    on_track = calculate_sla_metrics(45, 10, start, due, NOW)
    assert on_track["sla_status"] == "on_track"


def test_sla_metrics_breached():
    start = NOW - timedelta(days=11, hours=12)
    due = NOW - timedelta(days=1, hours=12)

    metrics = calculate_sla_metrics(50, 10, start, due, NOW)
    assert metrics == {"sla_status": "breached", "days_remaining": -1, "expected_progress": 100}

    finished = calculate_sla_metrics(100, 10, start, due, NOW)
    assert finished["sla_status"] == "on_track"
    assert finished["expected_progress"] == 100


def test_portal_login_and_row_level_access(app, client):
    login_admin(client)
    owner_id = make_client(app)
    other_id = make_client(app, business_name="Other Co", email="other@example.com")

    assert client.post(
        f"/clients/{owner_id}/portal-password", json={"password": "short"}
    ).status_code == 400
    assert client.post(
        f"/clients/{owner_id}/portal-password", json={"password": "PortalPass1"}
    ).status_code == 200

    with app.app_context():
        own_project = Project(client_id=owner_id, title="Own Site")
        other_project = Project(client_id=other_id, title="Other Site")
        db.session.add_all([own_project, other_project])
        db.session.commit()
        own_project_id = own_project.id
        other_project_id = other_project.id

    portal = app.test_client()
    assert portal.get("/portal").status_code == 401

    denied = portal.post(
        "/portal/login", json={"email": "other@example.com", "password": "PortalPass1"}
    )
    assert denied.status_code == 403

    login = portal.post(
        "/portal/login", json={"email": "OWNER@acme.example.com", "password": "PortalPass1"}
    )
    assert login.status_code == 200

    dashboard = portal.get("/portal").get_json()
    assert dashboard["client"]["business_name"] == "Acme Plumbing"
    assert "stripe_customer_id" not in dashboard["client"]
    assert [project["title"] for project in dashboard["projects"]] == ["Own Site"]

    assert portal.get(f"/portal/projects/{own_project_id}").status_code == 200
    assert portal.get(f"/portal/projects/{other_project_id}").status_code == 403

    # Portal sessions are not admin sessions.
    assert portal.get("/clients").status_code == 401


def test_portal_cancel_subscription_enforces_ownership(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    owner_id = make_client(app)
    other_id = make_client(app, business_name="Other Co", email="other@example.com")
    client.post(f"/clients/{owner_id}/portal-password", json={"password": "PortalPass1"})

    with app.app_context():
        own = Subscription(client_id=owner_id, stripe_subscription_id="sub_own", status="active")
        other = Subscription(
            client_id=other_id, stripe_subscription_id="sub_other", status="active"
        )
        db.session.add_all([own, other])
        db.session.commit()
        own_id, other_id_sub = own.id, other.id

    portal = app.test_client()
    portal.post(
        "/portal/login", json={"email": "owner@acme.example.com", "password": "PortalPass1"}
    )

    forbidden = portal.post(f"/portal/subscriptions/{other_id_sub}/cancel")
    assert forbidden.status_code == 403
    assert stub.Subscription.modified == []

    response = portal.post(f"/portal/subscriptions/{own_id}/cancel")
    assert response.status_code == 200
    assert response.get_json()["cancel_at_period_end"] is True
    assert stub.Subscription.modified == [("sub_own", {"cancel_at_period_end": True})]

    with app.app_context():
        owner = db.session.get(Client, owner_id)
        assert owner.service_status == "paused"
        assert owner.cancellation_reason == "client_requested"
        assert ensure_aware(owner.cancellation_effective_date) == datetime.fromtimestamp(
            1767225600, timezone.utc
        )


def test_billing_routes_report_unconfigured_stripe(app, client):
    login_admin(client)
    client_id = make_client(app)
    response = client.post(f"/clients/{client_id}/billing/customer")
    assert response.status_code == 503


def test_create_billing_customer_once(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app, billing_email="billing@acme.example.com")

    first = client.post(f"/clients/{client_id}/billing/customer")
    second = client.post(f"/clients/{client_id}/billing/customer")
    assert first.get_json() == {"stripe_customer_id": "cus_1"}
    assert second.get_json() == {"stripe_customer_id": "cus_1"}
    assert len(stub.Customer.created) == 1
    assert stub.Customer.created[0]["email"] == "billing@acme.example.com"
    assert stub.Customer.created[0]["metadata"] == {"client_id": str(client_id)}


def test_create_subscription_reports_required_action(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app)

    assert client.post(f"/clients/{client_id}/billing/subscriptions", json={}).status_code == 400

    response = client.post(
        f"/clients/{client_id}/billing/subscriptions", json={"price_id": "price_1"}
    )
    assert response.status_code == 201
    assert response.get_json() == {
        "subscription_id": "sub_new",
        "status": "incomplete",
        "requires_action": True,
        "hosted_invoice_url": "https://pay.example.com/in_sub",
    }
    assert stub.Subscription.created[0]["payment_behavior"] == "default_incomplete"


def test_create_invoice_converts_dollars_to_cents(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app)

    bad = client.post(
        f"/clients/{client_id}/billing/invoices",
        json={"line_items": [{"description": "Logo", "amount": "-5"}]},
    )
    assert bad.status_code == 400

    response = client.post(
        f"/clients/{client_id}/billing/invoices",
        json={
            "line_items": [
                {"description": "Logo design", "amount": "100.00"},
                {"description": "Hosting", "amount": 50},
            ]
        },
    )
    assert response.status_code == 201
    payload = response.get_json()
    assert payload["status"] == "open"
    assert payload["amount_due"] == 15000
    assert payload["hosted_invoice_url"] == "https://invoice.example.com/in_test"

    assert [item["amount"] for item in stub.InvoiceItem.created] == [10000, 5000]
    assert stub.Invoice.created[0]["collection_method"] == "send_invoice"
    assert stub.Invoice.created[0]["days_until_due"] == 7


def test_milestone_invoice_carries_metadata(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app)
    project_id = client.post(f"/clients/{client_id}/projects", json={"title": "Site"}).get_json()["id"]
    milestone_id = client.post(
        f"/projects/{project_id}/milestones", json={"name": "Design", "amount_cents": 25000}
    ).get_json()["id"]

    response = client.post(f"/milestones/{milestone_id}/invoice")
    assert response.status_code == 200
    assert response.get_json()["milestone"]["status"] == "invoiced"
    assert stub.Invoice.created[0]["metadata"]["milestone_id"] == str(milestone_id)
    assert stub.InvoiceItem.created[0]["description"] == "Site: Design"

    again = client.post(f"/milestones/{milestone_id}/invoice")
    assert again.status_code == 400


def test_invoice_discount_validation(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app)
    paid_id = make_invoice(app, client_id, stripe_invoice_id="in_paid", status="paid")
    open_id = make_invoice(app, client_id, stripe_invoice_id="in_open", status="open")

    assert client.post(
        f"/invoices/{paid_id}/discount", json={"discount_type": "percentage", "discount_value": 10}
    ).status_code == 400
    assert client.post(
        f"/invoices/{open_id}/discount", json={"discount_type": "percentage", "discount_value": 0}
    ).status_code == 400
    assert client.post(
        f"/invoices/{open_id}/discount", json={"discount_type": "fixed", "discount_value": 50}
    ).status_code == 400
    assert stub.Coupon.created == []

    stub.Invoice.amount_due = 4000
    response = client.post(
        f"/invoices/{open_id}/discount", json={"discount_type": "percentage", "discount_value": 20}
    )
    assert response.status_code == 200
    coupon_id = response.get_json()["coupon_id"]
    assert coupon_id.startswith("discount_in_open_")
    assert stub.Coupon.created[0]["percent_off"] == 20
    assert stub.Coupon.created[0]["duration"] == "once"
    assert stub.Invoice.modified == [("in_open", {"discounts": [{"coupon": coupon_id}]})]
    assert response.get_json()["invoice"]["amount_due"] == 4000

    with app.app_context():
        discount = InvoiceDiscount.query.one()
        assert discount.applied_by == TEST_ADMIN_USERNAME


def test_toggle_invoice_reminders(app, client):
    login_admin(client)
    client_id = make_client(app)
    invoice_id = make_invoice(app, client_id)

    response = client.post(f"/invoices/{invoice_id}/reminders", json={"disabled": True})
    assert response.get_json()["disable_reminders"] is True


def test_billing_products(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)

    assert client.post(
        "/billing/products", json={"name": "Care Plan", "billing_type": "subscription"}
    ).status_code == 400

    response = client.post(
        "/billing/products",
        json={"name": "Care Plan", "billing_type": "subscription", "monthly_price_cents": 9900},
    )
    assert response.status_code == 201
    assert response.get_json()["stripe_price_id"] == "price_1"
    price_data = stub.Product.created[0]["default_price_data"]
    assert price_data == {
        "currency": "usd",
        "unit_amount": 9900,
        "recurring": {"interval": "month"},
    }

    listing = client.get("/billing/products").get_json()
    assert [product["name"] for product in listing] == ["Care Plan"]


def test_deposit_checkout_and_webhook_activation(app, client, monkeypatch, sent_emails):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app, stripe_customer_id="cus_deposit")
    project_id = client.post(
        f"/clients/{client_id}/projects", json={"required_deposit_cents": 75000}
    ).get_json()["id"]

    assert client.post(f"/projects/{project_id}/deposit-checkout", json={}).status_code == 400

    response = client.post(
        f"/projects/{project_id}/deposit-checkout",
        json={"success_url": "https://agency.example.com/ok", "cancel_url": "https://agency.example.com/no"},
    )
    assert response.status_code == 201
    assert response.get_json()["checkout_url"] == "https://checkout.example.com/cs_1"
    session_kwargs = stub.checkout.Session.created[0]
    assert session_kwargs["mode"] == "payment"
    assert session_kwargs["metadata"] == {
        "client_id": str(client_id),
        "project_id": str(project_id),
        "payment_type": "deposit",
    }

    event = SimpleNamespace(
        id="evt_deposit",
        type="checkout.session.completed",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="cs_1",
                customer="cus_deposit",
                payment_intent="pi_deposit",
                metadata=session_kwargs["metadata"],
            )
        ),
    )
    webhook = post_webhook(client, stub, event)
    assert webhook.get_json() == {"received": True, "handled": True}

    with app.app_context():
        deposit = Deposit.query.one()
        assert deposit.status == "paid"
        assert deposit.stripe_payment_intent_id == "pi_deposit"
        project = db.session.get(Project, project_id)
        assert project.deposit_paid is True
        assert project.status == "active"


def test_deposit_checkout_requires_owner(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    login_admin(client)
    owner_id = make_client(app)
    other_id = make_client(app, business_name="Other Co", email="other@example.com")
    client.post(f"/clients/{other_id}/portal-password", json={"password": "PortalPass1"})
    project_id = client.post(
        f"/clients/{owner_id}/projects", json={"required_deposit_cents": 1000}
    ).get_json()["id"]

    anonymous = app.test_client()
    assert anonymous.post(f"/projects/{project_id}/deposit-checkout", json={}).status_code == 401

    portal = app.test_client()
    portal.post("/portal/login", json={"email": "other@example.com", "password": "PortalPass1"})
    response = portal.post(
        f"/projects/{project_id}/deposit-checkout",
        json={"success_url": "https://a.example.com", "cancel_url": "https://b.example.com"},
    )
    assert response.status_code == 403


def test_webhook_invoice_paid_restores_access_once(app, client, monkeypatch, sent_emails):
    stub = install_stripe_stub(app, monkeypatch)
    client_id = make_client(
        app,
        stripe_customer_id="cus_1",
        access_status="grace",
        billing_escalation_stage=2,
        billing_grace_until=NOW,
        last_billing_notice_sent=NOW,
    )
    event = SimpleNamespace(
        id="evt_paid",
        type="invoice.paid",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="in_1",
                customer="cus_1",
                status="paid",
                amount_due=5000,
                currency="usd",
                hosted_invoice_url="https://invoice.example.com/in_1",
                invoice_pdf=None,
                due_date=None,
                metadata={},
            )
        ),
    )

    first = post_webhook(client, stub, event)
    assert first.status_code == 200
    assert first.get_json()["handled"] is True

    duplicate = post_webhook(client, stub, event)
    assert duplicate.get_json() == {"received": True, "duplicate": True}

    with app.app_context():
        record = db.session.get(Client, client_id)
        assert record.access_status == "active"
        assert record.billing_escalation_stage == 0
        assert record.billing_grace_until is None
        assert Invoice.query.one().status == "paid"
        assert PaymentEvent.query.count() == 1

    assert [subject for _, subject, _ in sent_emails] == ["Access Restored for Acme Plumbing"]


def test_webhook_payment_failed_starts_grace(app, client, monkeypatch, sent_emails):
    stub = install_stripe_stub(app, monkeypatch)
    client_id = make_client(app, stripe_customer_id="cus_1")
    due_timestamp = int(NOW.timestamp())
    event = SimpleNamespace(
        id="evt_failed",
        type="invoice.payment_failed",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="in_failed",
                customer="cus_1",
                status="open",
                amount_due=9900,
                currency="usd",
                hosted_invoice_url=None,
                invoice_pdf=None,
                due_date=due_timestamp,
                metadata={},
            )
        ),
    )
    post_webhook(client, stub, event)

    with app.app_context():
        record = db.session.get(Client, client_id)
        assert record.access_status == "grace"
        assert record.billing_escalation_stage == 1
        assert ensure_aware(record.billing_grace_until) == NOW + timedelta(days=7)
        assert record.last_billing_notice_sent is not None


def test_webhook_milestone_marked_paid(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    client_id = make_client(app, stripe_customer_id="cus_1")
    with app.app_context():
        project = Project(client_id=client_id, title="Site")
        db.session.add(project)
        db.session.flush()
        milestone = Milestone(project_id=project.id, name="Launch", amount_cents=1000, status="invoiced")
        db.session.add(milestone)
        db.session.commit()
        milestone_id = milestone.id

    event = SimpleNamespace(
        id="evt_milestone",
        type="invoice.payment_succeeded",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="in_milestone",
                customer="cus_1",
                status="paid",
                amount_due=1000,
                currency="usd",
                metadata={"milestone_id": str(milestone_id)},
            )
        ),
    )
    post_webhook(client, stub, event)

    with app.app_context():
        assert db.session.get(Milestone, milestone_id).status == "paid"


def test_webhook_subscription_lifecycle(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    client_id = make_client(app, stripe_customer_id="cus_1", access_status="restricted")

    def subscription_event(event_id, event_type, status):
        return SimpleNamespace(
            id=event_id,
            type=event_type,
            data=SimpleNamespace(
                object=SimpleNamespace(
                    id="sub_1",
                    customer="cus_1",
                    status=status,
                    cancel_at_period_end=False,
                    current_period_end=1767225600,
                    items=SimpleNamespace(data=[SimpleNamespace(price=SimpleNamespace(id="price_1"))]),
                    metadata={},
                )
            ),
        )

    post_webhook(client, stub, subscription_event("evt_1", "customer.subscription.created", "active"))
    with app.app_context():
        record = db.session.get(Client, client_id)
        assert record.access_status == "active"
        assert record.stripe_subscription_id == "sub_1"
        assert Subscription.query.one().stripe_price_id == "price_1"

    post_webhook(client, stub, subscription_event("evt_2", "customer.subscription.deleted", "active"))
    with app.app_context():
        record = db.session.get(Client, client_id)
        assert record.access_status == "restricted"
        assert record.stripe_subscription_id is None
        assert Subscription.query.one().status == "canceled"


def test_webhook_ignores_unknown_events(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    event = SimpleNamespace(
        id="evt_other",
        type="customer.created",
        data=SimpleNamespace(object=SimpleNamespace(id="cus_new", metadata={})),
    )
    response = post_webhook(client, stub, event)
    assert response.get_json() == {"received": True, "handled": False}


def test_webhook_rejects_invalid_payload(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    response = client.post("/stripe/webhook", data="not json", content_type="application/json")
    assert response.status_code == 400


def test_webhook_rejects_non_object_payloads(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    for body in ("[]", '"x"', "42"):
        response = client.post("/stripe/webhook", data=body, content_type="application/json")
        assert response.status_code == 400
        assert response.get_json() == {"error": "Invalid webhook payload."}


def test_webhook_verifies_signature_when_secret_configured(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    app.config["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
    stub.Event.next_event = SimpleNamespace(
        id="evt_signed",
        type="customer.created",
        data=SimpleNamespace(object=SimpleNamespace(id="cus_new", metadata={})),
    )
    body = '{"id": "evt_signed"}'

    forged = client.post(
        "/stripe/webhook",
        data=body,
        content_type="application/json",
        headers={"Stripe-Signature": "t=1,v1=forged"},
    )
    assert forged.status_code == 400

    signed = client.post(
        "/stripe/webhook",
        data=body,
        content_type="application/json",
        headers={"Stripe-Signature": "t=1,v1=valid"},
    )
    assert signed.get_json() == {"received": True, "handled": False}

    payload, signature, secret = stub.Webhook.calls[-1]
    assert payload == body.encode("utf-8")
    assert signature == "t=1,v1=valid"
    assert secret == "whsec_test"
    with app.app_context():
        assert PaymentEvent.query.one().stripe_event_id == "evt_signed"


def test_billing_automation_escalates_in_stages(app, sent_emails):
    client_id = make_client(app)
    make_invoice(app, client_id, status="open", due_date=NOW - timedelta(days=2))

    with app.app_context():
        assert run_billing_automation(NOW) == [{"client_id": client_id, "action": "first_reminder"}]
        record = db.session.get(Client, client_id)
        assert record.billing_escalation_stage == 1
        assert record.access_status == "grace"
        assert ensure_aware(record.billing_grace_until) == NOW - timedelta(days=2) + timedelta(days=7)

        assert run_billing_automation(NOW + timedelta(hours=2)) == []

        assert run_billing_automation(NOW + timedelta(days=4)) == [
            {"client_id": client_id, "action": "final_notice"}
        ]
        assert db.session.get(Client, client_id).billing_escalation_stage == 2

        assert run_billing_automation(NOW + timedelta(days=6)) == [
            {"client_id": client_id, "action": "restricted"}
        ]
        record = db.session.get(Client, client_id)
        assert record.billing_escalation_stage == 3
        assert record.access_status == "restricted"

        Invoice.query.one().status = "paid"
        db.session.commit()
        assert run_billing_automation(NOW + timedelta(days=7)) == [
            {"client_id": client_id, "action": "reset_flags"}
        ]
        assert db.session.get(Client, client_id).access_status == "active"
        assert run_billing_automation(NOW + timedelta(days=8)) == []

    subjects = [subject for _, subject, _ in sent_emails]
    assert subjects == [
        "Action Required – Invoice Past Due for Acme Plumbing",
        "Final Notice – Service Access At Risk for Acme Plumbing",
    ]


def test_billing_automation_skips_overridden_clients(app, sent_emails):
    client_id = make_client(app, access_override=True)
    make_invoice(app, client_id, status="past_due", due_date=NOW - timedelta(days=20))

    with app.app_context():
        assert run_billing_automation(NOW) == []
        record = db.session.get(Client, client_id)
        assert evaluate_client_access(record, NOW) == {"has_access": True, "reason": "override"}
    assert sent_emails == []


def test_client_access_evaluation(app):
    client_id = make_client(app)
    with app.app_context():
        record = db.session.get(Client, client_id)
        assert evaluate_client_access(record, NOW)["reason"] == "no_subscription"

        db.session.add(Subscription(client_id=client_id, stripe_subscription_id="sub_1", status="active"))
        db.session.commit()
        assert evaluate_client_access(record, NOW) == {"has_access": True, "reason": "active"}

        db.session.add(
            Invoice(
                client_id=client_id,
                stripe_invoice_id="in_late",
                status="open",
                due_date=NOW - timedelta(days=1),
            )
        )
        db.session.commit()
        assert evaluate_client_access(record, NOW) == {"has_access": False, "reason": "overdue"}


def test_client_access_prefers_active_subscription_over_status(app):
    client_id = make_client(app, access_status="restricted")
    with app.app_context():
        db.session.add(Subscription(client_id=client_id, stripe_subscription_id="sub_1", status="active"))
        db.session.commit()
        record = db.session.get(Client, client_id)
        assert evaluate_client_access(record, NOW) == {"has_access": True, "reason": "active"}

        db.session.add(
            Invoice(
                client_id=client_id,
                stripe_invoice_id="in_unpaid",
                status="unpaid",
                due_date=NOW - timedelta(days=3),
            )
        )
        db.session.commit()
        assert evaluate_client_access(record, NOW) == {"has_access": False, "reason": "overdue"}


def test_billing_notifications_can_be_silenced(app, client, sent_emails):
    login_admin(client)
    client.post("/settings/smtp", json={"notify_billing_activity": False})
    assert client.get("/settings/smtp").get_json()["notify_billing_activity"] is False

    client_id = make_client(app)
    make_invoice(app, client_id, status="open", due_date=NOW - timedelta(days=2))
    with app.app_context():
        assert run_billing_automation(NOW) == [{"client_id": client_id, "action": "first_reminder"}]
        assert db.session.get(Client, client_id).billing_escalation_stage == 1
    assert sent_emails == []


def test_invoice_reminders(app, sent_emails):
    client_id = make_client(app, billing_email="billing@acme.example.com")
    make_invoice(app, client_id, stripe_invoice_id="in_upcoming", status="open", due_date=NOW + timedelta(days=3))
    make_invoice(app, client_id, stripe_invoice_id="in_late", status="past_due", due_date=NOW - timedelta(days=4))
    make_invoice(
        app,
        client_id,
        stripe_invoice_id="in_muted",
        status="open",
        due_date=NOW + timedelta(days=1),
        disable_reminders=True,
    )
    make_invoice(app, client_id, stripe_invoice_id="in_far", status="open", due_date=NOW + timedelta(days=20))

    with app.app_context():
        sent = send_invoice_reminders(NOW)
        assert len(sent) == 2
        assert sent[0].startswith("upcoming reminder sent for Acme Plumbing")
        assert sent[1].startswith("overdue reminder sent for Acme Plumbing")

        assert send_invoice_reminders(NOW + timedelta(hours=12)) == []
        later = send_invoice_reminders(NOW + timedelta(days=1, hours=1))
        assert len(later) == 1
        assert later[0].startswith("upcoming")

    assert {recipient for recipient, _, _ in sent_emails} == {"billing@acme.example.com"}
    assert "$50.00" in sent_emails[0][2]


def test_revenue_metrics(app):
    client_id = make_client(app)
    with app.app_context():
        db.session.add(
            BillingProduct(
                name="Care Plan",
                billing_type="subscription",
                monthly_price_cents=4900,
                stripe_price_id="price_care",
            )
        )
        db.session.add(
            BillingProduct(
                name="Logo", billing_type="one_time", amount_cents=30000, stripe_price_id="price_logo"
            )
        )
        db.session.add_all(
            [
                Subscription(
                    client_id=client_id,
                    stripe_subscription_id="sub_a",
                    stripe_price_id="price_care",
                    status="active",
                    created_at=NOW - timedelta(days=60),
                ),
                Subscription(
                    client_id=client_id,
                    stripe_subscription_id="sub_b",
                    stripe_price_id="price_care",
                    status="trialing",
                    created_at=NOW - timedelta(days=90),
                ),
                Subscription(
                    client_id=client_id,
                    stripe_subscription_id="sub_c",
                    stripe_price_id="price_care",
                    status="canceled",
                    created_at=NOW - timedelta(days=10),
                ),
                Subscription(
                    client_id=client_id,
                    stripe_subscription_id="sub_d",
                    stripe_price_id="price_logo",
                    status="active",
                    created_at=NOW - timedelta(days=5),
                ),
                Invoice(
                    client_id=client_id,
                    stripe_invoice_id="in_paid",
                    status="paid",
                    amount_due=15050,
                    created_at=NOW - timedelta(days=3),
                ),
                Invoice(
                    client_id=client_id,
                    stripe_invoice_id="in_old",
                    status="paid",
                    amount_due=99900,
                    created_at=NOW - timedelta(days=45),
                ),
            ]
        )
        db.session.commit()

        metrics = calculate_revenue_metrics(NOW)

    assert metrics == {
        "mrr": 98,
        "active_subscriptions": 2,
        "new_subscriptions_30_days": 1,
        "canceled_subscriptions_30_days": 1,
        "churn_rate": 33.33,
        "one_time_revenue_30_days": 150.5,
    }


def test_revenue_metrics_empty(app):
    with app.app_context():
        metrics = calculate_revenue_metrics(NOW)
    assert metrics["mrr"] == 0
    assert metrics["churn_rate"] == 0


def test_dashboard_cache_invalidated_on_client_change(app, client):
    login_admin(client)
    first = client.get("/dashboard").get_json()
    assert first["total_clients"] == 0

    client.post("/clients", json={"business_name": "Acme", "email": "acme@example.com"})
    second = client.get("/dashboard").get_json()
    assert second["total_clients"] == 1
    assert second["client_counts"]["onboarding"] == 1


def test_send_sms_through_hook(app, client):
    login_admin(client)
    delivered = []

    def _sender(to, body):
        delivered.append((to, body))
        return "SM123"

    app.config["SMS_SENDER"] = _sender

    assert client.post("/sms", json={"to": "", "body": "Hi"}).status_code == 400
    response = client.post("/sms", json={"to": "(205) 555-0100", "body": "Your site is live!"})
    assert response.status_code == 201
    assert response.get_json()["sid"] == "SM123"
    assert delivered == [("+12055550100", "Your site is live!")]

    listing = client.get("/sms").get_json()
    assert listing[0]["status"] == "sent"


def test_send_sms_requires_twilio_configuration(client):
    login_admin(client)
    response = client.post("/sms", json={"to": "2055550100", "body": "Hi"})
    assert response.status_code == 500


def test_send_sms_records_twilio_failure(app, client, monkeypatch):
    login_admin(client)
    app.config.update(
        TWILIO_ACCOUNT_SID="AC123",
        TWILIO_AUTH_TOKEN="token",
        TWILIO_PHONE_NUMBER="+12055550199",
    )
    calls = []

    def fake_post(url, data=None, auth=None, timeout=None):
        calls.append((url, data, auth))
        return FakeResponse(400, {"message": "The 'To' number is not a valid phone number."})

    monkeypatch.setattr(app_module.requests, "post", fake_post)

    response = client.post("/sms", json={"to": "+44 20 7946 0958", "body": "Hello"})
    assert response.status_code == 502
    assert "not a valid phone number" in response.get_json()["error"]
    assert calls[0][0].endswith("/Accounts/AC123/Messages.json")
    assert calls[0][1]["To"] == "+442079460958"
    assert calls[0][2] == ("AC123", "token")

    with app.app_context():
        message = SmsMessage.query.one()
        assert message.status == "failed"
        assert "not a valid phone number" in message.error_message


def test_sms_history_limit_is_clamped(app, client):
    login_admin(client)
    with app.app_context():
        db.session.add_all(
            [SmsMessage(to_number="+12055550100", body=f"Message {index}") for index in range(3)]
        )
        db.session.commit()

    assert len(client.get("/sms?limit=-5").get_json()) == 1
    assert len(client.get("/sms?limit=2").get_json()) == 2
    assert len(client.get("/sms").get_json()) == 3


def test_client_sms_requires_opt_in(app, client):
    login_admin(client)
    app.config["SMS_SENDER"] = lambda to, body: "SM1"
    client_id = make_client(app)

    response = client.post(f"/clients/{client_id}/sms", json={"body": "Hello"})
    assert response.status_code == 400

    client.patch(f"/clients/{client_id}", json={"sms_opt_in": True})
    response = client.post(f"/clients/{client_id}/sms", json={"body": "Hello"})
    assert response.status_code == 201
    assert response.get_json()["client_id"] == client_id


def test_twilio_settings_are_masked(app, client):
    login_admin(client)
    response = client.post(
        "/settings/twilio",
        json={"account_sid": "AC999", "auth_token": "supersecret", "phone_number": "205-555-0199"},
    )
    assert response.status_code == 200

    settings = client.get("/settings/twilio").get_json()
    assert settings["auth_token"] == "*******cret"
    assert settings["phone_number"] == "+12055550199"
    assert app.config["TWILIO_ACCOUNT_SID"] == "AC999"
    with app.app_context():
        assert TwilioConfig.query.one().is_ready()


def test_twilio_auth_token_is_encrypted_at_rest(app, client):
    login_admin(client)
    client.post(
        "/settings/twilio",
        json={"account_sid": "AC999", "auth_token": "supersecret", "phone_number": "205-555-0199"},
    )

    with app.app_context():
        config = TwilioConfig.query.one()
        assert config.auth_token_encrypted
        assert "supersecret" not in config.auth_token_encrypted
        assert config.auth_token == "supersecret"

        app.config["CREDENTIALS_ENCRYPTION_KEY"] = "rotated-key"
        assert config.auth_token is None
        assert not config.is_ready()


def test_twilio_connection_check(app, client, monkeypatch):
    login_admin(client)
    client.post(
        "/settings/twilio",
        json={"account_sid": "AC999", "auth_token": "supersecret", "phone_number": "205-555-0199"},
    )
    calls = []

    def fake_get(url, auth=None, timeout=None):
        calls.append((url, auth))
        return FakeResponse(200, {"friendly_name": "Agency", "status": "active"})

    monkeypatch.setattr(app_module.requests, "get", fake_get)
    response = client.post("/settings/twilio/test")
    assert response.get_json() == {"ok": True, "friendly_name": "Agency", "status": "active"}
    assert calls[0][0].endswith("/Accounts/AC999.json")
    assert calls[0][1] == ("AC999", "supersecret")

    monkeypatch.setattr(
        app_module.requests,
        "get",
        lambda url, auth=None, timeout=None: FakeResponse(401, {"message": "Authenticate"}),
    )
    failed = client.post("/settings/twilio/test")
    assert failed.status_code == 502
    assert failed.get_json()["error"] == "Authenticate"


def test_stripe_settings_are_masked_and_applied(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)

    response = client.post(
        "/settings/stripe",
        json={
            "secret_key": " sk_live_12345678 ",
            "publishable_key": "pk_live_1",
            "webhook_secret": "whsec_abcdef",
            "portal_return_url": "https://agency.example.com/account",
        },
    )
    assert response.get_json() == {"configured": True}
    assert app.config["STRIPE_SECRET_KEY"] == "sk_live_12345678"
    assert app.config["STRIPE_WEBHOOK_SECRET"] == "whsec_abcdef"
    assert app.config["STRIPE_CUSTOMER_PORTAL_RETURN_URL"] == "https://agency.example.com/account"
    assert stub.api_key == "sk_live_12345678"
    assert stub.default_http_client == "requests-client"

    settings = client.get("/settings/stripe").get_json()
    assert settings["secret_key"] == "*" * 12 + "5678"
    assert settings["webhook_secret"] == "*" * 8 + "cdef"
    assert settings["publishable_key"] == "pk_live_1"
    assert settings["configured"] is True

    cleared = client.post("/settings/stripe", json={})
    assert cleared.get_json() == {"configured": False}
    assert stub.api_key is None
    with app.app_context():
        assert StripeConfig.query.one().secret_key is None


def test_smtp_settings_mask_and_encrypt_password(app, client):
    login_admin(client)
    assert client.post("/settings/smtp", json={"from_email": "not-an-email"}).status_code == 400

    response = client.post(
        "/settings/smtp",
        json={
            "smtp_host": "smtp.example.com",
            "smtp_port": 465,
            "use_tls": False,
            "smtp_username": "mailer",
            "smtp_password": "mail-pass-1234",
            "from_email": "billing@agency.example.com",
        },
    )
    assert response.get_json() == {"configured": True}

    settings = client.get("/settings/smtp").get_json()
    assert settings["password"] == "*" * 10 + "1234"
    assert settings["host"] == "smtp.example.com"
    assert settings["port"] == 465
    assert settings["use_tls"] is False

    # Saving without a password keeps the stored one.
    client.post(
        "/settings/smtp",
        json={"smtp_host": "smtp.example.com", "smtp_port": 465, "smtp_username": "mailer"},
    )

    with app.app_context():
        config = NotificationConfig.query.one()
        assert "mail-pass" not in config.smtp_password_encrypted
        assert config.smtp_password == "mail-pass-1234"
        assert get_effective_smtp_settings(app)["password"] == "mail-pass-1234"


def test_smtp_environment_settings_apply_until_credentials_are_stored(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'smtp.db'}",
            "SMTP_HOST": "mail.example.com",
            "SMTP_PORT": 2525,
            "SMTP_USERNAME": "env-user",
            "SMTP_PASSWORD": "env-pass",
            "SMTP_USE_TLS": False,
        }
    )

    with app.app_context():
        settings = get_effective_smtp_settings(app)
        assert settings["host"] == "mail.example.com"
        assert settings["port"] == 2525
        assert settings["use_tls"] is False
        assert settings["password"] == "env-pass"

        config = NotificationConfig.query.one()
        config.smtp_host = "smtp.example.com"
        config.smtp_port = 465
        config.smtp_username = "mailer"
        config.smtp_password = "stored-pass"
        db.session.commit()

        settings = get_effective_smtp_settings(app)
        assert settings["host"] == "smtp.example.com"
        assert settings["port"] == 465
        assert settings["use_tls"] is True
        assert settings["password"] == "stored-pass"
        db.session.remove()


def test_contact_form_notifies_agency(app, client, sent_emails):
    invalid = client.post("/contact", json={"fullName": "Jane", "email": "bad", "message": "Hi"})
    assert invalid.status_code == 400

    response = client.post(
        "/contact",
        json={"fullName": "Jane Doe", "email": "jane@example.com", "message": "Need a new site"},
    )
    assert response.status_code == 200
    assert response.get_json()["notified"] is True
    recipient, subject, body = sent_emails[0]
    assert recipient == "hello@agency.example.com"
    assert subject == "New Contact Form Submission from Jane Doe"
    assert "Need a new site" in body

    with app.app_context():
        assert ContactSubmission.query.one().form_type == "Quick Inquiry"


def test_contact_form_succeeds_when_email_fails(app, client):
    app.config["EMAIL_SENDER"] = lambda recipient, subject, body: False
    response = client.post(
        "/contact",
        json={"full_name": "Jane", "email": "jane@example.com", "message": "Hello"},
    )
    assert response.status_code == 200
    assert response.get_json()["notified"] is False


def test_addon_catalog_admin_crud(app, client):
    login_admin(client)
    missing_price = client.post("/addons", json={"name": "Blog Writing", "billing_type": "subscription"})
    assert missing_price.status_code == 400

    response = client.post(
        "/addons",
        json={
            "name": "Blog Writing!",
            "billing_type": "subscription",
            "monthly_price_cents": 9900,
            "price_cents": 500,
        },
    )
    assert response.status_code == 201
    addon = response.get_json()
    assert addon["key"] == "blog_writing"
    assert addon["price_cents"] is None
    assert addon["price_label"] == "$99.00/mo"

    duplicate = client.post(
        "/addons", json={"name": "Blog writing", "billing_type": "one_time", "price_cents": 100}
    )
    assert duplicate.status_code == 400

    logo = client.post(
        "/addons",
        json={
            "name": "Logo Design",
            "key": "Logo Design",
            "billing_type": "setup_plus_subscription",
            "setup_fee_cents": 25000,
            "monthly_price_cents": 1500,
            "sort_order": -1,
        },
    ).get_json()
    assert logo["key"] == "logo_design"
    assert logo["price_label"] == "$250.00 + $15.00/mo"
    assert [item["key"] for item in client.get("/addons").get_json()] == [
        "logo_design",
        "blog_writing",
    ]

    updated = client.patch(
        f"/addons/{addon['id']}",
        json={"billing_type": "one_time", "price_cents": 4900, "is_active": False},
    ).get_json()
    assert updated["price_label"] == "$49.00"
    assert updated["monthly_price_cents"] is None
    assert updated["is_active"] is False
    assert client.patch(f"/addons/{addon['id']}", json={"billing_type": "weekly"}).status_code == 400

    assert client.delete(f"/addons/{logo['id']}").get_json() == {"deleted": True}
    with app.app_context():
        assert AddonCatalogItem.query.count() == 1


def test_portal_addon_requests(app, client, sent_emails):
    login_admin(client)
    client_id = make_client(app)
    other_id = make_client(app, business_name="Other Co", email="other@example.com")
    client.post(f"/clients/{client_id}/portal-password", json={"password": "PortalPass1"})
    client.post("/addons", json={"name": "SEO Boost", "billing_type": "one_time", "price_cents": 19900})
    hidden = client.post(
        "/addons",
        json={
            "name": "Legacy Hosting",
            "billing_type": "subscription",
            "monthly_price_cents": 1000,
            "is_active": False,
        },
    )
    assert hidden.status_code == 201

    portal = app.test_client()
    assert portal.get("/portal/addons").status_code == 401
    portal.post("/portal/login", json={"email": "owner@acme.example.com", "password": "PortalPass1"})

    catalog = portal.get("/portal/addons").get_json()
    assert [item["key"] for item in catalog["addons"]] == ["seo_boost"]
    assert catalog["requests"] == []

    assert portal.post("/portal/addons/legacy_hosting/request").status_code == 404
    created = portal.post("/portal/addons/seo_boost/request", json={"notes": "Before launch"})
    assert created.status_code == 201
    assert created.get_json()["status"] == "requested"
    assert portal.post("/portal/addons/seo_boost/request", json={}).status_code == 400

    recipient, subject, body = sent_emails[-1]
    assert recipient == "ops@example.com"
    assert subject == "Add-on Request: SEO Boost for Acme Plumbing"
    assert "Before launch" in body

    with app.app_context():
        db.session.add(
            ClientAddonRequest(client_id=other_id, addon_key="seo_boost", addon_name="SEO Boost")
        )
        db.session.commit()
    own_requests = portal.get("/portal/addons").get_json()["requests"]
    assert [item["client_id"] for item in own_requests] == [client_id]

    request_id = created.get_json()["id"]
    assert portal.patch(f"/addons/requests/{request_id}", json={"status": "approved"}).status_code == 401
    assert client.patch(f"/addons/requests/{request_id}", json={"status": "maybe"}).status_code == 400
    approved = client.patch(f"/addons/requests/{request_id}", json={"status": "approved"}).get_json()
    assert approved["status"] == "approved"
    assert approved["resolved_at"] is not None
    assert len(client.get("/addons/requests?status=requested").get_json()) == 1


def test_scan_html_and_section_scores():
    scan = scan_html(SAMPLE_HTML)
    assert scan["seo"] == {
        "has_h1": True,
        "title_tag": True,
        "meta_description": True,
        "schema_markup": True,
        "alt_tags_count": 1,
        "total_images": 2,
    }
    assert scan["local"] == {
        "has_phone": True,
        "local_keywords_count": 3,
        "has_map_embed": True,
        "has_address": True,
    }
    assert score_seo_structure(scan["seo"]) == 90
    assert score_local_relevance(scan["local"]) == 95


def test_core_web_vitals_scoring():
    assert score_core_web_vitals({"lcp": 2.0, "fid": 80, "cls": 0.05}) == 100
    assert score_core_web_vitals({"lcp": 2.0, "fid": 200, "cls": 0.3}) == 50
    assert score_core_web_vitals({"lcp": 5.0, "fid": 400, "cls": 0.5}) == 0


def test_overall_score_renormalises_without_pagespeed():
    full = {
        "core_web_vitals": 100,
        "mobile": 100,
        "seo_structure": 100,
        "local_relevance": 100,
        "keyword_gap": 100,
    }
    assert compose_overall_score(full) == 100

    partial = {
        "core_web_vitals": None,
        "mobile": None,
        "seo_structure": 100,
        "local_relevance": 50,
        "keyword_gap": 0,
    }
    assert compose_overall_score(partial) == 65


def test_local_analysis_without_pagespeed_is_deterministic():
    scan = scan_html(SAMPLE_HTML)
    first = build_local_analysis("https://joes.example.com", scan, None, "plumbing")
    second = build_local_analysis("https://joes.example.com", scan, None, "plumbing")

    assert first["overall_score"] == second["overall_score"]
    assert first["pagespeed_available"] is False
    assert first["core_web_vitals"] is None
    assert first["mobile_score"] is None
    assert first["keyword_gap"]["coverage_score"] == 50
    assert first["keyword_gap"]["missing_keywords"] == ["24/7", "drain", "heater"]
    assert first["grade"] == "B"
    assert first["recommendation"] == "healthy"


def test_grades_and_tiers():
    assert [grade_for_score(score) for score in (95, 85, 75, 65, 10)] == ["A", "B", "C", "D", "F"]
    assert recommendation_tier(59) == "critical"
    assert recommendation_tier(60) == "needs_work"
    assert recommendation_tier(80) == "healthy"


def test_analysis_route_stores_lead(app, client, monkeypatch):
    def fake_get(url, params=None, timeout=None, headers=None):
        if "pagespeedonline" in url:
            assert ("strategy", "mobile") in params
            return FakeResponse(200, PAGESPEED_PAYLOAD)
        return FakeResponse(200, text=SAMPLE_HTML)

    monkeypatch.setattr(app_module.requests, "get", fake_get)

    response = client.post(
        "/analysis",
        json={"websiteUrl": "joes.example.com", "industry": "plumbing", "email": "joe@example.com"},
    )
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["website_url"] == "https://joes.example.com"
    assert payload["pagespeed_available"] is True
    assert payload["core_web_vitals"]["score"] == 100
    assert payload["core_web_vitals"]["lcp"] == 2.1
    assert payload["mobile_score"]["score"] == 67
    assert 0 <= payload["overall_score"] <= 100

    with app.app_context():
        lead = db.session.get(WebsiteAnalysis, payload["lead_id"])
        assert lead.tool == "local"
        assert lead.contact_email == "joe@example.com"
        assert lead.overall_score == payload["overall_score"]


def test_analysis_degrades_when_pagespeed_fails(app, client, monkeypatch):
    def fake_get(url, params=None, timeout=None, headers=None):
        if "pagespeedonline" in url:
            raise requests.ConnectionError("offline")
        return FakeResponse(200, text=SAMPLE_HTML)

    monkeypatch.setattr(app_module.requests, "get", fake_get)

    response = client.post("/analysis", json={"websiteUrl": "https://joes.example.com"})
    assert response.status_code == 200
    assert response.get_json()["pagespeed_available"] is False


def test_analysis_reports_unreachable_site(client, monkeypatch):
    monkeypatch.setattr(
        app_module.requests,
        "get",
        lambda url, params=None, timeout=None, headers=None: FakeResponse(200, text="tiny"),
    )
    response = client.post("/analysis", json={"websiteUrl": "https://tiny.example.com"})
    assert response.status_code == 502

    assert client.post("/analysis", json={"websiteUrl": "not a url"}).status_code == 400


def test_analysis_mock_mode(app, client):
    app.config["ANALYZER_USE_MOCK"] = True
    response = client.post("/analysis", json={"websiteUrl": "demo.example.com"})
    assert response.get_json()["overall_score"] == 62
    assert response.get_json()["grade"] == "D"


def test_design_era_detection():
    legacy = analyze_design_era("<center><font size=2>Welcome</font></center><marquee>Hi</marquee>")
    assert legacy["era"] == "2000s"
    assert legacy["score"] == 30
    assert legacy["confidence"] == 100

    modern_html = (
        "<style>.a{display: flex}.b{display: grid}:root{color: var(--ink)}</style>"
        '<img src="hero.webp" loading="lazy">'
    )
    modern = analyze_design_era(modern_html)
    assert modern["era"] == "modern"
    assert modern["score"] == 95
    assert modern["confidence"] == 100

    mixed = analyze_design_era("<p>plain page</p>")
    assert mixed["era"] == "2010s"
    assert mixed["score"] == 70
    assert mixed["confidence"] == 85


def test_trust_signals_and_mobile_preview():
    html = '<div class="hero"><img src="a.png"></div><a href="tel:2055550100">Call</a>'
    signals = analyze_trust_signals(html, "https://example.com")
    assert signals["has_hero_image"] is True
    assert signals["has_contact_info"] is True
    assert signals["has_ssl"] is True
    assert signals["score"] == 50

    preview = analyze_mobile_preview("<table><tr><td>x</td></tr></table>")
    assert preview["responsive"] is False
    assert preview["issues"] == [
        "Missing viewport meta tag",
        "Fixed-width tables may not be mobile-friendly",
    ]
    assert preview["mobile_usability_score"] == 70
    assert preview["breakpoints_detected"] == ["No breakpoints detected"]

    responsive = analyze_mobile_preview(
        '<meta name="viewport" content="width=device-width">'
        "<style>@media (max-width: 768px){.a{display: flex}}</style>"
    )
    assert responsive["responsive"] is True
    assert responsive["breakpoints_detected"] == ["Tablet (768px)"]
    assert responsive["mobile_usability_score"] == 100


def test_visual_analysis_weights():
    result = analyze_visual("<p>plain page</p>", "http://example.com")
    era = result["design_era"]["score"]
    trust = result["trust_signals"]["score"]
    mobile = result["mobile_preview"]["mobile_usability_score"]
    assert result["overall_score"] == round(0.4 * era + 0.35 * trust + 0.25 * mobile)
    outdated_types = [item["type"] for item in result["visual_comparison"]["outdated_elements"]]
    assert outdated_types == ["Visual Effects", "Hero Section"]


def test_visual_analysis_route(app, client, monkeypatch):
    monkeypatch.setattr(
        app_module.requests,
        "get",
        lambda url, params=None, timeout=None, headers=None: FakeResponse(200, text=SAMPLE_HTML),
    )
    response = client.post("/analysis/visual", json={"websiteUrl": "joes.example.com"})
    assert response.status_code == 200
    with app.app_context():
        assert WebsiteAnalysis.query.one().tool == "visual"


def test_report_checkout_idempotency(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)

    bad_origin = client.post(
        "/analysis/report-checkout",
        json={"business_name": "Acme", "location": "Austin, TX", "origin": "ftp://example.com"},
    )
    assert bad_origin.status_code == 400

    payload = {
        "business_name": "Acme",
        "location": "Austin, TX",
        "lite_score": 72.4,
        "competitor_radius": 5,
        "origin": "https://example.com/",
    }
    response = client.post("/analysis/report-checkout", json=payload)
    assert response.status_code == 200
    assert response.get_json()["url"] == "https://checkout.example.com/cs_1"

    kwargs = stub.checkout.Session.created[0]
    expected_key = hashlib.sha256(b"Acme|Austin, TX|72|5|https://example.com").hexdigest()[:32]
    assert kwargs["idempotency_key"] == expected_key
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 4900
    assert kwargs["metadata"]["lite_score"] == "72"
    assert kwargs["success_url"].startswith("https://example.com/report/success")

    client.post("/analysis/report-checkout", json={**payload, "lite_score": 150, "competitor_radius": -3})
    assert stub.checkout.Session.created[1]["metadata"]["lite_score"] == "100"
    assert stub.checkout.Session.created[1]["metadata"]["competitor_radius"] == "0"


def test_report_checkout_rejects_non_finite_scores(app, client, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    response = client.post(
        "/analysis/report-checkout",
        json={
            "business_name": "Acme",
            "location": "Austin, TX",
            "lite_score": "1e999",
            "origin": "https://example.com",
        },
    )
    assert response.status_code == 400
    assert stub.checkout.Session.created == []


def test_report_checkout_session_lookup(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    response = client.get("/analysis/report-checkout/cs_42")
    assert response.get_json() == {
        "payment_status": "paid",
        "customer_email": "buyer@example.com",
        "metadata": {"business_name": "Acme Plumbing"},
    }


def test_portal_billing_session_requires_return_url(app, client, monkeypatch):
    install_stripe_stub(app, monkeypatch)
    login_admin(client)
    client_id = make_client(app)

    response = client.post(f"/clients/{client_id}/billing/portal-session")
    assert response.get_json() == {"url": "https://billing.example.com/session"}

    app.config["STRIPE_CUSTOMER_PORTAL_RETURN_URL"] = None
    response = client.post(f"/clients/{client_id}/billing/portal-session")
    assert response.status_code == 500


def test_cli_commands(app, sent_emails):
    client_id = make_client(app)
    make_invoice(app, client_id, status="open", due_date=datetime.now(timezone.utc) - timedelta(days=2))

    runner = app.test_cli_runner()
    result = runner.invoke(args=["run-billing-automation"])
    assert result.exit_code == 0
    assert f"client {client_id}: first_reminder" in result.output

    result = runner.invoke(args=["send-invoice-reminders"])
    assert result.exit_code == 0
    assert "0 reminder(s) sent." in result.output


def test_helpers():
    assert normalize_phone_number("205.555.0100") == "+12055550100"
    assert normalize_phone_number("1 (205) 555-0100") == "+12055550100"
    assert normalize_phone_number("555-0100") is None
    assert parse_amount_to_cents("19.999") == 2000
    assert parse_amount_to_cents("abc") is None
    assert normalize_website_url("Example.com/path") == "https://Example.com/path"
    assert normalize_website_url("localhost") is None
