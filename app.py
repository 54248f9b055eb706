import base64
import hashlib
import json
import math
import os
import re
import secrets
import smtplib
import ssl
import time
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from functools import wraps
from pathlib import Path

import click
import requests
import stripe
from bs4 import BeautifulSoup
from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv
from flask import (
    Flask,
    abort,
    current_app,
    g,
    jsonify,
    request,
    session,
)
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

from sqlalchemy import event, inspect, or_, text
from sqlalchemy.exc import NoSuchTableError

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

load_dotenv()

db = SQLAlchemy()

STRIPE_DEFAULT_CURRENCY = "usd"
STRIPE_PAYMENT_TYPE_DEPOSIT = "deposit"
ANALYSIS_REPORT_PRICE_CENTS = 4900
ANALYSIS_REPORT_PRODUCT_NAME = "Website Growth Report"
ANALYSIS_REPORT_PRODUCT_DESCRIPTION = (
    "Full website analysis with competitor benchmarking and PDF report"
)

DASHBOARD_OVERVIEW_CACHE_KEY = "_dashboard_overview_cache"
DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT = 10.0

ADMIN_SESSION_KEY = "admin_authenticated"
PORTAL_SESSION_KEY = "client_portal_id"

MIN_PASSWORD_LENGTH = 8

# Billing escalation timing, in days past the invoice due date.
REMINDER_DAY = 1
FINAL_NOTICE_DAY = 5
GRACE_PERIOD_DAYS = 7

UPCOMING_REMINDER_WINDOW_DAYS = 7
UPCOMING_REMINDER_INTERVAL = timedelta(days=1)
OVERDUE_REMINDER_AFTER_DAYS = 3
OVERDUE_REMINDER_INTERVAL = timedelta(days=3)

DEFAULT_INVOICE_DAYS_UNTIL_DUE = 7

CLIENT_STATUS_OPTIONS = ["lead", "onboarding", "active", "paused", "archived"]
PROJECT_STATUS_OPTIONS = [
    "draft",
    "awaiting_deposit",
    "active",
    "paused",
    "completed",
]
TASK_STATUS_OPTIONS = ["todo", "in_progress", "done", "blocked"]
MILESTONE_STATUS_OPTIONS = ["pending", "invoiced", "paid"]
ACCESS_STATUS_OPTIONS = ["active", "grace", "restricted"]
OPEN_INVOICE_STATUSES = {"open", "past_due"}
ACCESS_CHECK_INVOICE_STATUSES = OPEN_INVOICE_STATUSES | {"unpaid"}
ACTIVE_SUBSCRIPTION_STATUSES = {"active", "trialing"}
BILLING_TYPES = {"one_time", "subscription"}
DISCOUNT_TYPES = {"percentage", "fixed"}
ADDON_BILLING_TYPES = ["one_time", "subscription", "setup_plus_subscription"]
ADDON_REQUEST_STATUSES = ["requested", "approved", "declined"]

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_or_none(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    return value.isoformat()


def from_unix_timestamp(value: object | None) -> datetime | None:
    timestamp = _coerce_int(value)
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, UTC)


def parse_datetime_value(value: str | None) -> datetime | None:
    if not value:
        return None
    cleaned = str(value).strip()
    if not cleaned:
        return None
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    return ensure_aware(parsed)


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def is_valid_email(value: str | None) -> bool:
    return bool(value and EMAIL_PATTERN.match(value.strip()))


def _coerce_int(value: object | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return None
    return None


def _coerce_float(value: object | None) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(result):
        return None
    return result


def parse_amount_to_cents(raw: object) -> int | None:
    """Parse a dollar amount such as ``"150.00"`` into integer cents."""

    if raw is None:
        return None
    try:
        amount = Decimal(str(raw).strip()).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int(amount * 100)


def format_cents(value: int | None) -> str:
    if value is None:
        return "$0.00"
    dollars = Decimal(int(value)) / Decimal(100)
    return f"${dollars:,.2f}"


def normalize_phone_number(raw: str | None) -> str | None:
    """Return an E.164 number for SMS delivery, or None when unusable."""

    cleaned = (raw or "").strip()
    if not cleaned:
        return None
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    if cleaned.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


def ensure_list(value: object) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    return []


def _stripe_field(stripe_object: object, name: str, default=None):
    """Read a field from a StripeObject (a dict) or a plain attribute holder."""

    if stripe_object is None:
        return default
    if isinstance(stripe_object, dict):
        return stripe_object.get(name, default)
    return getattr(stripe_object, name, default)


def _metadata_dict(stripe_object: object) -> dict[str, str]:
    metadata = _stripe_field(stripe_object, "metadata") or {}
    try:
        return dict(metadata)
    except TypeError:
        try:
            return dict(metadata.to_dict())  # type: ignore[attr-defined]
        except AttributeError:
            return {}


def describe_stripe_error(error: Exception) -> str:
    message = getattr(error, "user_message", None) or getattr(error, "message", None)
    if message:
        return message
    return "An unexpected payment processor error occurred."


def init_stripe(app: Flask) -> None:
    secret_key = app.config.get("STRIPE_SECRET_KEY")
    if secret_key:
        stripe.api_key = secret_key
        stripe.default_http_client = stripe.RequestsClient()
    else:
        stripe.api_key = None


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


class TwilioApiError(RuntimeError):
    """Raised when the Twilio REST API rejects a request."""


class TwilioApiClient:
    API_BASE = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        timeout: float = 10.0,
    ):
        self.account_sid = (account_sid or "").strip()
        self.auth_token = (auth_token or "").strip()
        self.from_number = (from_number or "").strip()
        self.timeout = timeout

        if not self.account_sid or not self.auth_token or not self.from_number:
            raise TwilioApiError(
                "Twilio account SID, auth token, and phone number are required."
            )

    @property
    def _auth(self) -> tuple[str, str]:
        return self.account_sid, self.auth_token

    @staticmethod
    def _error_message(response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return f"Twilio API responded with HTTP {response.status_code}"

    def send_message(self, to: str, body: str) -> str:
        endpoint = f"{self.API_BASE}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = requests.post(
                endpoint,
                data={"To": to, "From": self.from_number, "Body": body},
                auth=self._auth,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TwilioApiError(f"Unable to reach Twilio: {exc}") from exc

        if response.status_code not in (200, 201):
            raise TwilioApiError(self._error_message(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise TwilioApiError("Twilio returned an invalid JSON payload.") from exc

        sid = payload.get("sid") if isinstance(payload, dict) else None
        if not sid:
            raise TwilioApiError("Twilio response did not include a message SID.")
        return sid

    def fetch_account(self) -> dict:
        endpoint = f"{self.API_BASE}/Accounts/{self.account_sid}.json"
        try:
            response = requests.get(endpoint, auth=self._auth, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TwilioApiError(f"Unable to reach Twilio: {exc}") from exc

        if response.status_code != 200:
            raise TwilioApiError(self._error_message(response))
        try:
            payload = response.json()
        except ValueError as exc:
            raise TwilioApiError("Twilio returned an invalid JSON payload.") from exc
        if not isinstance(payload, dict):
            raise TwilioApiError("Unexpected Twilio account payload.")
        return payload


class PageSpeedError(RuntimeError):
    """Raised when PageSpeed Insights cannot produce lab data for a URL."""


class ScanError(RuntimeError):
    """Raised when a website's HTML cannot be retrieved for scanning."""


_LEADING_FLOAT = re.compile(r"[-+]?\d*\.?\d+")


def _leading_float(value: object | None) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = _LEADING_FLOAT.search(str(value).replace(",", ""))
    if not match:
        return 0.0
    return float(match.group(0))


class PageSpeedClient:
    API_ENDPOINT = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    CATEGORIES = ("performance", "accessibility", "seo")

    def __init__(self, api_key: str | None = None, *, timeout: float = 30.0):
        self.api_key = (api_key or "").strip() or None
        self.timeout = timeout

    def analyze(self, url: str) -> dict[str, object]:
        params: list[tuple[str, str]] = [("url", url), ("strategy", "mobile")]
        params.extend(("category", category) for category in self.CATEGORIES)
        if self.api_key:
            params.append(("key", self.api_key))

        try:
            response = requests.get(self.API_ENDPOINT, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise PageSpeedError(f"PageSpeed request failed: {exc}") from exc

        if response.status_code != 200:
            raise PageSpeedError(
                f"PageSpeed API responded with HTTP {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise PageSpeedError("PageSpeed returned an invalid JSON payload.") from exc

        return self.transform(payload)

    @staticmethod
    def transform(payload: dict) -> dict[str, object]:
        lighthouse = payload.get("lighthouseResult") if isinstance(payload, dict) else None
        if not isinstance(lighthouse, dict):
            raise PageSpeedError("PageSpeed response is missing lighthouse data.")

        audits = lighthouse.get("audits") or {}
        categories = lighthouse.get("categories") or {}

        def _category_score(name: str) -> float:
            category = categories.get(name) or {}
            return round((_coerce_float(category.get("score")) or 0.0) * 100, 1)

        def _audit(name: str) -> dict:
            audit = audits.get(name)
            return audit if isinstance(audit, dict) else {}

        return {
            "performance_score": _category_score("performance"),
            "seo_score": _category_score("seo"),
            "accessibility_score": _category_score("accessibility"),
            "metrics": {
                "lcp": _leading_float(_audit("largest-contentful-paint").get("displayValue")),
                "cls": _leading_float(_audit("cumulative-layout-shift").get("displayValue")),
                # Lab data has no FID; max potential FID is the closest proxy.
                "fid": _leading_float(_audit("max-potential-fid").get("numericValue")),
            },
            "mobile_checks": {
                "viewport": _audit("viewport").get("score") == 1,
                "font_sizes": _audit("font-size").get("score") == 1,
                "touch_targets": _audit("tap-targets").get("score") == 1,
            },
        }


def normalize_website_url(raw: str | None) -> str | None:
    cleaned = (raw or "").strip()
    if not cleaned:
        return None
    if not re.match(r"^https?://", cleaned, re.IGNORECASE):
        cleaned = f"https://{cleaned}"
    host = re.sub(r"^https?://", "", cleaned, flags=re.IGNORECASE).split("/")[0]
    if not host or "." not in host or " " in host:
        return None
    return cleaned


def fetch_website_html(url: str, *, timeout: float = 15.0) -> str:
    try:
        response = requests.get(
            url,
            timeout=timeout,
            headers={"User-Agent": "Mozilla/5.0 (compatible; WebsiteAnalyzer/1.0)"},
        )
    except requests.RequestException as exc:
        raise ScanError(f"Could not fetch website content: {exc}") from exc

    if response.status_code >= 400:
        raise ScanError(f"Website responded with HTTP {response.status_code}")

    html = response.text or ""
    if len(html) < 100:
        raise ScanError("Could not fetch website content")
    return html


LOCAL_KEYWORDS = ["near me", "local", "serving", "area", "county", "city"]
PHONE_PATTERN = re.compile(r"(\(\d{3}\)\s*\d{3}-\d{4})|(\d{3}-\d{3}-\d{4})")

INDUSTRY_KEYWORDS: dict[str, list[str]] = {
    "plumbing": ["emergency", "24/7", "repair", "leak", "drain", "heater"],
    "hvac": ["ac", "heating", "cooling", "furnace", "repair", "installation"],
    "lawyer": ["attorney", "law", "legal", "consultation", "case", "court"],
    "restaurant": ["menu", "reservation", "dining", "food", "order", "delivery"],
    "general": ["service", "contact", "about", "quality", "professional"],
}


def scan_html(html: str) -> dict[str, object]:
    soup = BeautifulSoup(html or "", "html.parser")

    title = soup.find("title")
    meta_description = soup.find("meta", attrs={"name": "description"})
    images = soup.find_all("img")
    images_with_alt = [
        image for image in images if (image.get("alt") or "").strip()
    ]
    schema_scripts = soup.find_all("script", attrs={"type": "application/ld+json"})
    map_embed = soup.find(
        "iframe", src=lambda value: bool(value) and "google.com/maps" in value
    )

    body = soup.body or soup
    body_text = body.get_text(" ", strip=True)
    lowered = body_text.lower()

    return {
        "seo": {
            "has_h1": soup.find("h1") is not None,
            "title_tag": bool(title and title.get_text(strip=True)),
            "meta_description": bool(
                meta_description and (meta_description.get("content") or "").strip()
            ),
            "schema_markup": bool(schema_scripts),
            "alt_tags_count": len(images_with_alt),
            "total_images": len(images),
        },
        "local": {
            "has_phone": bool(PHONE_PATTERN.search(body_text)),
            "local_keywords_count": sum(1 for keyword in LOCAL_KEYWORDS if keyword in lowered),
            "has_map_embed": map_embed is not None,
            "has_address": "ga 3" in lowered or "street" in lowered,
        },
        "content": lowered,
    }


def analyze_keywords(content: str, industry: str | None = "general") -> dict[str, object]:
    key = (industry or "general").strip().lower()
    target_keywords = INDUSTRY_KEYWORDS.get(key) or INDUSTRY_KEYWORDS["general"]
    content = content or ""

    present = [keyword for keyword in target_keywords if keyword in content]
    missing = [keyword for keyword in target_keywords if keyword not in content]
    return {
        "target": list(target_keywords),
        "present": present,
        "missing": missing,
        "score": len(present) / len(target_keywords) * 100,
    }


# (good, needs improvement) upper bounds.
CORE_WEB_VITAL_THRESHOLDS: dict[str, tuple[float, float]] = {
    "lcp": (2.5, 4.0),
    "fid": (100.0, 300.0),
    "cls": (0.1, 0.25),
}

ANALYSIS_SECTION_WEIGHTS: dict[str, float] = {
    "core_web_vitals": 0.30,
    "mobile": 0.20,
    "seo_structure": 0.25,
    "local_relevance": 0.15,
    "keyword_gap": 0.10,
}


def _rate_vital(value: float, thresholds: tuple[float, float]) -> int:
    good, needs_improvement = thresholds
    if value <= good:
        return 100
    if value <= needs_improvement:
        return 50
    return 0


def score_core_web_vitals(metrics: dict[str, float]) -> int:
    ratings = [
        _rate_vital(float(metrics.get(name) or 0.0), thresholds)
        for name, thresholds in CORE_WEB_VITAL_THRESHOLDS.items()
    ]
    return round(sum(ratings) / len(ratings))


def score_mobile(touch_targets: bool, viewport_scaling: bool, text_readability: bool) -> int:
    checks = [touch_targets, viewport_scaling, text_readability]
    return round(sum(1 for check in checks if check) / len(checks) * 100)


def score_seo_structure(seo: dict[str, object]) -> int:
    score = 0.0
    for flag in ("has_h1", "title_tag", "meta_description", "schema_markup"):
        if seo.get(flag):
            score += 20
    total_images = int(seo.get("total_images") or 0)
    if total_images:
        coverage = min(1.0, int(seo.get("alt_tags_count") or 0) / total_images)
    else:
        coverage = 1.0
    score += 20 * coverage
    return round(score)


def score_local_relevance(local: dict[str, object]) -> int:
    score = 0
    if local.get("has_phone"):
        score += 30
    if local.get("has_map_embed"):
        score += 30
    if local.get("has_address"):
        score += 20
    score += min(20, 5 * int(local.get("local_keywords_count") or 0))
    return score


def compose_overall_score(section_scores: dict[str, float | None]) -> int:
    """Weighted mean of the available section scores, renormalised."""

    weighted_total = 0.0
    weight_sum = 0.0
    for section, weight in ANALYSIS_SECTION_WEIGHTS.items():
        value = section_scores.get(section)
        if value is None:
            continue
        weighted_total += float(value) * weight
        weight_sum += weight
    if weight_sum <= 0:
        return 0
    return max(0, min(100, round(weighted_total / weight_sum)))


def grade_for_score(score: int) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def recommendation_tier(score: int) -> str:
    if score < 60:
        return "critical"
    if score < 80:
        return "needs_work"
    return "healthy"


def build_local_analysis(
    website_url: str,
    scan: dict[str, object],
    pagespeed: dict[str, object] | None,
    industry: str | None = None,
) -> dict[str, object]:
    seo = scan["seo"]
    local = scan["local"]
    keywords = analyze_keywords(scan.get("content") or "", industry)

    core_web_vitals: dict[str, object] | None = None
    mobile: dict[str, object] | None = None
    if pagespeed is not None:
        metrics = pagespeed.get("metrics") or {}
        checks = pagespeed.get("mobile_checks") or {}
        core_web_vitals = {
            "lcp": metrics.get("lcp", 0.0),
            "fid": metrics.get("fid", 0.0),
            "cls": metrics.get("cls", 0.0),
            "score": score_core_web_vitals(metrics),
        }
        mobile = {
            "touch_targets": bool(checks.get("touch_targets")),
            "viewport_scaling": bool(checks.get("viewport")),
            "text_readability": bool(checks.get("font_sizes")),
        }
        mobile["score"] = score_mobile(
            mobile["touch_targets"], mobile["viewport_scaling"], mobile["text_readability"]
        )

    seo_structure = {
        "has_h1": bool(seo.get("has_h1")),
        "meta_description": bool(seo.get("meta_description")),
        "title_tag": bool(seo.get("title_tag")),
        "schema_markup": bool(seo.get("schema_markup")),
        "alt_tags": int(seo.get("alt_tags_count") or 0),
        "total_images": int(seo.get("total_images") or 0),
        "score": score_seo_structure(seo),
    }
    local_relevance = {
        "nap_consistency": bool(local.get("has_phone")),
        "google_my_business": bool(local.get("has_map_embed")),
        "has_address": bool(local.get("has_address")),
        "local_keywords": int(local.get("local_keywords_count") or 0),
        "score": score_local_relevance(local),
    }
    keyword_gap = {
        "target_keywords": keywords["target"],
        "missing_keywords": keywords["missing"],
        "coverage_score": round(keywords["score"]),
    }

    overall = compose_overall_score(
        {
            "core_web_vitals": core_web_vitals["score"] if core_web_vitals else None,
            "mobile": mobile["score"] if mobile else None,
            "seo_structure": seo_structure["score"],
            "local_relevance": local_relevance["score"],
            "keyword_gap": keyword_gap["coverage_score"],
        }
    )

    return {
        "website_url": website_url,
        "overall_score": overall,
        "grade": grade_for_score(overall),
        "recommendation": recommendation_tier(overall),
        "pagespeed_available": pagespeed is not None,
        "core_web_vitals": core_web_vitals,
        "mobile_score": mobile,
        "seo_structure": seo_structure,
        "local_relevance": local_relevance,
        "keyword_gap": keyword_gap,
        "generated_at": utcnow().isoformat(),
    }


def sample_local_analysis(website_url: str) -> dict[str, object]:
    return {
        "website_url": website_url,
        "overall_score": 62,
        "grade": grade_for_score(62),
        "recommendation": recommendation_tier(62),
        "pagespeed_available": True,
        "core_web_vitals": {"lcp": 3.2, "fid": 150.0, "cls": 0.15, "score": 50},
        "mobile_score": {
            "touch_targets": False,
            "viewport_scaling": True,
            "text_readability": False,
            "score": 33,
        },
        "seo_structure": {
            "has_h1": True,
            "meta_description": False,
            "title_tag": True,
            "schema_markup": False,
            "alt_tags": 3,
            "total_images": 5,
            "score": 52,
        },
        "local_relevance": {
            "nap_consistency": True,
            "google_my_business": False,
            "has_address": True,
            "local_keywords": 2,
            "score": 60,
        },
        "keyword_gap": {
            "target_keywords": ["emergency", "24/7", "repair", "leak", "drain", "heater"],
            "missing_keywords": ["emergency", "24/7"],
            "coverage_score": 67,
        },
        "generated_at": utcnow().isoformat(),
    }


def run_local_analysis(
    app: Flask, website_url: str, industry: str | None = None
) -> dict[str, object]:
    if app.config.get("ANALYZER_USE_MOCK"):
        return sample_local_analysis(website_url)

    html = fetch_website_html(
        website_url, timeout=float(app.config.get("ANALYZER_FETCH_TIMEOUT", 15.0))
    )
    scan = scan_html(html)

    pagespeed_client = PageSpeedClient(
        app.config.get("PAGESPEED_API_KEY"),
        timeout=float(app.config.get("PAGESPEED_TIMEOUT", 30.0)),
    )
    try:
        pagespeed = pagespeed_client.analyze(website_url)
    except PageSpeedError as exc:
        app.logger.warning("PageSpeed unavailable for %s: %s", website_url, exc)
        pagespeed = None

    return build_local_analysis(website_url, scan, pagespeed, industry)


def _count_true(flags: dict[str, bool]) -> int:
    return sum(1 for value in flags.values() if value)


def analyze_design_era(html: str) -> dict[str, object]:
    legacy_patterns = {
        "tables": bool(re.search(r"<table[^>]*layout", html, re.I))
        or len(re.findall(r"<table", html, re.I)) > 10,
        "flash": bool(re.search(r"\.swf|flash", html, re.I)),
        "marquee": bool(re.search(r"<marquee", html, re.I)),
        "frames": bool(re.search(r"<frameset|<frame\s", html, re.I)),
        "font_tags": bool(re.search(r"<font", html, re.I)),
        "center_tags": bool(re.search(r"<center", html, re.I)),
        "spacer_gifs": bool(re.search(r"spacer\.gif|1x1\.gif", html, re.I)),
    }
    dated_patterns = {
        "jquery": bool(re.search(r"jquery", html, re.I)),
        "gradients": bool(re.search(r"gradient", html, re.I)),
        "heavy_shadows": bool(re.search(r"box-shadow.*,.*,.*,", html, re.I)),
        "skeuomorphic": bool(re.search(r"border-radius.*px.*box-shadow", html, re.I)),
        "carousel": bool(re.search(r"carousel|slider|slideshow", html, re.I)),
    }
    modern_patterns = {
        "flexbox": bool(re.search(r"display:\s*flex", html, re.I)),
        "grid": bool(re.search(r"display:\s*grid", html, re.I)),
        "css_variables": bool(re.search(r"var\(--", html, re.I)),
        "spa_frameworks": bool(re.search(r"react|vue|angular|__next|_app", html, re.I)),
        "modern_frameworks": bool(re.search(r"tailwind|bootstrap\s5|material-ui", html, re.I)),
        "webp": bool(re.search(r"\.webp", html, re.I)),
        "lazy_loading": bool(re.search(r'loading="lazy"', html, re.I)),
    }

    legacy_count = _count_true(legacy_patterns)
    dated_count = _count_true(dated_patterns)
    modern_count = _count_true(modern_patterns)

    indicators: list[str] = []
    if legacy_count >= 2:
        era, score, dominant = "2000s", 30, legacy_count
        indicators.extend(
            [
                "Table-based layouts detected",
                "Legacy HTML tags found",
                "No modern CSS frameworks",
            ]
        )
        if legacy_patterns["flash"]:
            indicators.append("Flash/SWF references")
        if legacy_patterns["frames"]:
            indicators.append("Frameset usage")
    elif dated_count >= 2 and modern_count < 3:
        era, score, dominant = "2010s", 60, dated_count
        indicators.extend(
            [
                "jQuery-heavy implementation",
                "Heavy use of gradients and shadows",
                "Outdated design patterns",
            ]
        )
        if dated_patterns["carousel"]:
            indicators.append("Old-style carousels")
    elif modern_count >= 3:
        era, score, dominant = "modern", 95, modern_count
        indicators.extend(
            [
                "Modern CSS (Flexbox/Grid)",
                "Contemporary frameworks detected",
                "Optimized assets (WebP, lazy loading)",
            ]
        )
    else:
        era, score, dominant = "2010s", 70, max(dated_count, modern_count)
        indicators.extend(
            [
                "Mixed design patterns",
                "Some modern elements",
                "Could be more contemporary",
            ]
        )

    return {
        "era": era,
        "confidence": min(100, 85 + 5 * dominant),
        "indicators": indicators,
        "score": score,
    }


def analyze_trust_signals(html: str, url: str) -> dict[str, object]:
    signals = {
        "has_hero_image": bool(re.search(r"hero|banner|jumbotron", html, re.I))
        and bool(re.search(r"<img", html, re.I)),
        "has_contact_info": bool(re.search(r"contact|phone|email|address", html, re.I))
        or bool(re.search(r"tel:|mailto:", html, re.I))
        or bool(re.search(r"\(\d{3}\)\s*\d{3}-\d{4}", html)),
        "has_ssl": url.lower().startswith("https://"),
        "modern_color_palette": bool(re.search(r"var\(--", html, re.I))
        or bool(re.search(r"hsla?\(", html, re.I))
        or bool(re.search(r"#[0-9a-f]{6}", html, re.I)),
        "good_whitespace": len(re.findall(r"margin|padding", html, re.I)) > 20,
        "modern_fonts": bool(
            re.search(r"google.*fonts|font-family.*system-ui|Inter|Roboto|Poppins", html, re.I)
        )
        or bool(re.search(r"woff2|font-display", html, re.I)),
    }
    score = round(_count_true(signals) / len(signals) * 100)
    return {**signals, "score": score}


def analyze_mobile_preview(html: str) -> dict[str, object]:
    issues: list[str] = []
    breakpoints: list[str] = []

    has_viewport = bool(re.search(r"<meta[^>]*name=[\"']viewport[\"']", html, re.I))
    if not has_viewport:
        issues.append("Missing viewport meta tag")

    has_media_queries = bool(re.search(r"@media", html, re.I))
    has_flexbox = bool(re.search(r"display:\s*flex", html, re.I))
    has_grid = bool(re.search(r"display:\s*grid", html, re.I))
    responsive = has_viewport and (has_media_queries or has_flexbox or has_grid)

    for query in re.findall(r"@media[^{]*\([^)]*\)", html, re.I):
        if "768" in query:
            breakpoints.append("Tablet (768px)")
        if "1024" in query:
            breakpoints.append("Desktop (1024px)")
        if re.search(r"480|640", query):
            breakpoints.append("Mobile (480-640px)")

    if re.search(r"<table", html, re.I) and not re.search(r"@media.*table", html, re.I):
        issues.append("Fixed-width tables may not be mobile-friendly")
    if re.search(r"width:\s*\d{4,}px", html, re.I):
        issues.append("Fixed large widths detected")

    score = 50
    if responsive:
        score += 30
    if breakpoints:
        score += 10
    if has_flexbox or has_grid:
        score += 10
    if not issues:
        score = 100
    elif len(issues) <= 2:
        score = max(score, 70)

    return {
        "responsive": responsive,
        "breakpoints_detected": breakpoints or ["No breakpoints detected"],
        "mobile_usability_score": min(score, 100),
        "issues": issues,
    }


def build_visual_comparison(
    design_era: dict[str, object], trust_signals: dict[str, object]
) -> dict[str, object]:
    outdated: list[dict[str, object]] = []
    opportunities: list[str] = []

    if design_era["era"] == "2000s":
        outdated.append(
            {
                "type": "Layout",
                "is_outdated": True,
                "description": "Table-based layout from early 2000s",
                "suggestion": "Modernize with CSS Grid or Flexbox for responsive layouts",
            }
        )
        outdated.append(
            {
                "type": "Typography",
                "is_outdated": True,
                "description": "Legacy font rendering and sizing",
                "suggestion": "Use modern web fonts with proper scaling",
            }
        )
        opportunities.append("Complete design overhaul to modern standards")
        opportunities.append("Implement responsive design from ground up")
    elif design_era["era"] == "2010s":
        outdated.append(
            {
                "type": "Visual Effects",
                "is_outdated": True,
                "description": "Heavy gradients and drop shadows (2010s style)",
                "suggestion": "Adopt flat design with subtle shadows for depth",
            }
        )
        opportunities.append("Simplify visual effects and embrace minimalism")
        opportunities.append("Update to modern component library")

    if not trust_signals.get("has_hero_image"):
        outdated.append(
            {
                "type": "Hero Section",
                "is_outdated": True,
                "description": "Missing or weak hero section",
                "suggestion": "Add professional hero image with clear value proposition",
            }
        )
    if not trust_signals.get("modern_fonts"):
        opportunities.append("Implement modern typography system")
    if not trust_signals.get("modern_color_palette"):
        opportunities.append("Develop cohesive, modern color palette")

    opportunities.extend(
        [
            "Increase white space for better readability",
            "Add micro-interactions and smooth transitions",
            "Optimize for accessibility (WCAG 2.1)",
        ]
    )
    return {
        "outdated_elements": outdated,
        "modernization_opportunities": opportunities,
    }


VISUAL_SECTION_WEIGHTS = {"design_era": 0.4, "trust_signals": 0.35, "mobile_preview": 0.25}


def analyze_visual(html: str, website_url: str) -> dict[str, object]:
    design_era = analyze_design_era(html)
    trust_signals = analyze_trust_signals(html, website_url)
    mobile_preview = analyze_mobile_preview(html)

    overall = round(
        design_era["score"] * VISUAL_SECTION_WEIGHTS["design_era"]
        + trust_signals["score"] * VISUAL_SECTION_WEIGHTS["trust_signals"]
        + mobile_preview["mobile_usability_score"] * VISUAL_SECTION_WEIGHTS["mobile_preview"]
    )

    return {
        "website_url": website_url,
        "overall_score": overall,
        "grade": grade_for_score(overall),
        "recommendation": recommendation_tier(overall),
        "design_era": design_era,
        "trust_signals": trust_signals,
        "mobile_preview": mobile_preview,
        "visual_comparison": build_visual_comparison(design_era, trust_signals),
        "generated_at": utcnow().isoformat(),
    }


class AdminUser(db.Model):
    __tablename__ = "admin_users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), nullable=False, unique=True)
    email = db.Column(db.String(255), unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<AdminUser {self.username}>"


class Client(db.Model):
    __tablename__ = "clients"

    id = db.Column(db.Integer, primary_key=True)
    business_name = db.Column(db.String(200), nullable=False)
    contact_name = db.Column(db.String(120))
    email = db.Column(db.String(255), nullable=False, unique=True)
    billing_email = db.Column(db.String(255))
    phone = db.Column(db.String(40))
    website_url = db.Column(db.String(500))
    notes = db.Column(db.Text)
    status = db.Column(db.String(40), nullable=False, default="onboarding")
    portal_password_hash = db.Column(db.String(255))
    portal_password_updated_at = db.Column(db.DateTime(timezone=True))
    sms_opt_in = db.Column(db.Boolean, nullable=False, default=False)
    stripe_customer_id = db.Column(db.String(64), unique=True)
    stripe_subscription_id = db.Column(db.String(64))
    access_status = db.Column(db.String(20), nullable=False, default="active")
    access_override = db.Column(db.Boolean, nullable=False, default=False)
    billing_escalation_stage = db.Column(db.Integer, nullable=False, default=0)
    billing_grace_until = db.Column(db.DateTime(timezone=True))
    last_billing_notice_sent = db.Column(db.DateTime(timezone=True))
    service_status = db.Column(db.String(40), nullable=False, default="active")
    cancellation_reason = db.Column(db.String(120))
    cancellation_effective_date = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    projects = db.relationship(
        "Project", back_populates="client", cascade="all, delete-orphan"
    )
    invoices = db.relationship(
        "Invoice", back_populates="client", cascade="all, delete-orphan"
    )
    subscriptions = db.relationship(
        "Subscription", back_populates="client", cascade="all, delete-orphan"
    )
    deposits = db.relationship(
        "Deposit", back_populates="client", cascade="all, delete-orphan"
    )
    addon_requests = db.relationship(
        "ClientAddonRequest", back_populates="client", cascade="all, delete-orphan"
    )
    sms_messages = db.relationship("SmsMessage", back_populates="client")

    def __repr__(self) -> str:
        return f"<Client {self.email}>"

    @property
    def billing_contact_email(self) -> str | None:
        return (self.billing_email or self.email or "").strip() or None

    def reset_billing_flags(self) -> None:
        self.access_status = "active"
        self.billing_escalation_stage = 0
        self.billing_grace_until = None
        self.last_billing_notice_sent = None


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    title = db.Column(db.String(200), nullable=False, default="Untitled Project")
    description = db.Column(db.Text)
    status = db.Column(db.String(40), nullable=False, default="draft")
    progress_percent = db.Column(db.Integer, nullable=False, default=0)
    required_deposit_cents = db.Column(db.Integer)
    deposit_paid = db.Column(db.Boolean, nullable=False, default=False)
    service_status = db.Column(db.String(40), nullable=False, default="onboarding")
    sla_days = db.Column(db.Integer)
    sla_start_date = db.Column(db.DateTime(timezone=True))
    sla_due_date = db.Column(db.DateTime(timezone=True))
    sla_status = db.Column(db.String(20), nullable=False, default="on_track")
    sla_paused_at = db.Column(db.DateTime(timezone=True))
    sla_resume_offset_days = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    client = db.relationship("Client", back_populates="projects")
    tasks = db.relationship(
        "Task",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Task.id",
    )
    milestones = db.relationship(
        "Milestone",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="Milestone.order_index",
    )
    deposits = db.relationship("Deposit", back_populates="project")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Project {self.id} for client {self.client_id}>"


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="todo")
    due_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    project = db.relationship("Project", back_populates="tasks")


class Milestone(db.Model):
    __tablename__ = "milestones"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="pending")
    order_index = db.Column(db.Integer, nullable=False, default=0)
    stripe_invoice_id = db.Column(db.String(64))

    project = db.relationship("Project", back_populates="milestones")


class Deposit(db.Model):
    __tablename__ = "deposits"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id"))
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    stripe_checkout_session_id = db.Column(db.String(128), unique=True)
    stripe_invoice_id = db.Column(db.String(64))
    stripe_payment_intent_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    client = db.relationship("Client", back_populates="deposits")
    project = db.relationship("Project", back_populates="deposits")


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    stripe_invoice_id = db.Column(db.String(64), unique=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    hosted_invoice_url = db.Column(db.String(500))
    pdf_url = db.Column(db.String(500))
    amount_due = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default=STRIPE_DEFAULT_CURRENCY)
    due_date = db.Column(db.DateTime(timezone=True))
    last_reminder_sent_at = db.Column(db.DateTime(timezone=True))
    disable_reminders = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    client = db.relationship("Client", back_populates="invoices")
    discounts = db.relationship(
        "InvoiceDiscount", back_populates="invoice", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.id} for client {self.client_id}>"


class InvoiceDiscount(db.Model):
    __tablename__ = "invoice_discounts"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    discount_type = db.Column(db.String(20), nullable=False)
    discount_value = db.Column(db.Integer, nullable=False)
    stripe_coupon_id = db.Column(db.String(128))
    applied_by = db.Column(db.String(120))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice", back_populates="discounts")


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True)
    stripe_price_id = db.Column(db.String(64))
    status = db.Column(db.String(40), nullable=False, default="incomplete")
    current_period_end = db.Column(db.DateTime(timezone=True))
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    client = db.relationship("Client", back_populates="subscriptions")


class BillingProduct(db.Model):
    __tablename__ = "billing_products"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    billing_type = db.Column(db.String(20), nullable=False)
    amount_cents = db.Column(db.Integer)
    monthly_price_cents = db.Column(db.Integer)
    currency = db.Column(db.String(8), nullable=False, default=STRIPE_DEFAULT_CURRENCY)
    stripe_product_id = db.Column(db.String(64))
    stripe_price_id = db.Column(db.String(64), unique=True)
    bundled_with_product_id = db.Column(db.Integer, db.ForeignKey("billing_products.id"))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def price_cents(self) -> int:
        if self.billing_type == "subscription":
            return self.monthly_price_cents or 0
        return self.amount_cents or 0


class PaymentEvent(db.Model):
    __tablename__ = "payment_events"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(128), nullable=False, unique=True)
    type = db.Column(db.String(120), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"))
    payload = db.Column(db.JSON)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class SmsMessage(db.Model):
    __tablename__ = "sms_messages"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"))
    to_number = db.Column(db.String(40), nullable=False)
    body = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="queued")
    twilio_sid = db.Column(db.String(64))
    error_message = db.Column(db.String(500))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    client = db.relationship("Client", back_populates="sms_messages")


class ContactSubmission(db.Model):
    __tablename__ = "contact_submissions"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(40))
    message = db.Column(db.Text, nullable=False)
    form_type = db.Column(db.String(80), nullable=False, default="Quick Inquiry")
    notified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class AddonCatalogItem(db.Model):
    __tablename__ = "addon_catalog"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(120), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    billing_type = db.Column(db.String(40), nullable=False, default="subscription")
    price_cents = db.Column(db.Integer)
    setup_fee_cents = db.Column(db.Integer)
    monthly_price_cents = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def price_label(self) -> str:
        if self.billing_type == "one_time" and self.price_cents is not None:
            return format_cents(self.price_cents)
        if self.billing_type == "subscription" and self.monthly_price_cents is not None:
            return f"{format_cents(self.monthly_price_cents)}/mo"
        if (
            self.billing_type == "setup_plus_subscription"
            and self.setup_fee_cents is not None
            and self.monthly_price_cents is not None
        ):
            return (
                f"{format_cents(self.setup_fee_cents)} + "
                f"{format_cents(self.monthly_price_cents)}/mo"
            )
        return "N/A"


class ClientAddonRequest(db.Model):
    __tablename__ = "client_addon_requests"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=False)
    addon_key = db.Column(db.String(120), nullable=False)
    addon_name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="requested")
    notes = db.Column(db.Text)
    requested_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True))

    client = db.relationship("Client", back_populates="addon_requests")


class WebsiteAnalysis(db.Model):
    __tablename__ = "website_analyses"

    id = db.Column(db.Integer, primary_key=True)
    website_url = db.Column(db.String(500), nullable=False)
    business_name = db.Column(db.String(200))
    industry = db.Column(db.String(80))
    contact_email = db.Column(db.String(255))
    tool = db.Column(db.String(20), nullable=False, default="local")
    overall_score = db.Column(db.Integer, nullable=False)
    grade = db.Column(db.String(2), nullable=False)
    result = db.Column(db.JSON)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


def _credential_cipher() -> Fernet:
    secret = current_app.config.get("CREDENTIALS_ENCRYPTION_KEY") or current_app.config[
        "SECRET_KEY"
    ]
    digest = hashlib.sha256(str(secret).encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_credential(value: str | None) -> str | None:
    if not value:
        return None
    return _credential_cipher().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_credential(token: str | None) -> str | None:
    if not token:
        return None
    try:
        return _credential_cipher().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        current_app.logger.error(
            "A stored credential could not be decrypted. Check CREDENTIALS_ENCRYPTION_KEY."
        )
        return None


class StripeConfig(db.Model):
    __tablename__ = "stripe_config"

    id = db.Column(db.Integer, primary_key=True)
    secret_key = db.Column(db.String(255))
    publishable_key = db.Column(db.String(255))
    webhook_secret = db.Column(db.String(255))
    portal_return_url = db.Column(db.String(500))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<StripeConfig>"


class TwilioConfig(db.Model):
    __tablename__ = "twilio_config"

    id = db.Column(db.Integer, primary_key=True)
    account_sid = db.Column(db.String(64))
    auth_token_encrypted = db.Column("auth_token", db.String(512))
    phone_number = db.Column(db.String(40))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def auth_token(self) -> str | None:
        return decrypt_credential(self.auth_token_encrypted)

    @auth_token.setter
    def auth_token(self, value: str | None) -> None:
        self.auth_token_encrypted = encrypt_credential(value)

    def is_ready(self) -> bool:
        return bool(
            (self.account_sid or "").strip()
            and (self.auth_token or "").strip()
            and (self.phone_number or "").strip()
        )


class NotificationConfig(db.Model):
    __tablename__ = "notification_config"

    id = db.Column(db.Integer, primary_key=True)
    smtp_host = db.Column(db.String(255))
    smtp_port = db.Column(db.Integer, nullable=False, default=587)
    use_tls = db.Column(db.Boolean, nullable=False, default=True)
    smtp_username = db.Column(db.String(255))
    smtp_password_encrypted = db.Column("smtp_password", db.String(512))
    from_email = db.Column(db.String(255))
    from_name = db.Column(db.String(255))
    reply_to_email = db.Column(db.String(255))
    notify_billing_activity = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def smtp_password(self) -> str | None:
        return decrypt_credential(self.smtp_password_encrypted)

    @smtp_password.setter
    def smtp_password(self, value: str | None) -> None:
        self.smtp_password_encrypted = encrypt_credential(value)

    def smtp_ready(self) -> bool:
        host = (self.smtp_host or "").strip()
        username = (self.smtp_username or "").strip()
        password = (self.smtp_password or "").strip()
        return bool(host and username and password)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return "<NotificationConfig>"


def calculate_sla_due_date(start: datetime, sla_days: int) -> datetime:
    return ensure_aware(start) + timedelta(days=sla_days)


def _whole_days_between(later: datetime, earlier: datetime) -> int:
    # Truncates toward zero, so a due date 36 hours ago is -1 day.
    return int((later - earlier).total_seconds() / 86400)


def calculate_sla_metrics(
    progress_percent: int,
    sla_days: int | None,
    sla_start_date: datetime | None,
    sla_due_date: datetime | None,
    now: datetime | None = None,
) -> dict[str, object]:
    """Compare a project's progress against a linear SLA timeline.

    Returns ``sla_status`` (``on_track``, ``at_risk`` or ``breached``),
    ``days_remaining`` (negative once the due date has passed) and
    ``expected_progress`` as a whole percentage.
    """

    now = ensure_aware(now) or utcnow()

    if not sla_days or sla_days <= 0 or not sla_start_date or not sla_due_date:
        return {"sla_status": "on_track", "days_remaining": 0, "expected_progress": 0}

    start = ensure_aware(sla_start_date)
    due = ensure_aware(sla_due_date)
    progress = progress_percent or 0

    if due < now and progress < 100:
        return {
            "sla_status": "breached",
            "days_remaining": _whole_days_between(due, now),
            "expected_progress": 100,
        }

    total_days = _whole_days_between(due, start)
    elapsed_days = max(0, _whole_days_between(now, start))

    expected = 0.0
    if total_days > 0:
        expected = min(100.0, elapsed_days / total_days * 100)

    status = "on_track"
    if progress < expected - 10:
        status = "at_risk"

    return {
        "sla_status": status,
        "days_remaining": _whole_days_between(due, now),
        "expected_progress": round(expected),
    }


def refresh_project_sla(project: Project, now: datetime | None = None) -> dict[str, object]:
    metrics = calculate_sla_metrics(
        project.progress_percent,
        project.sla_days,
        project.sla_start_date,
        project.sla_due_date,
        now,
    )
    if project.sla_status != metrics["sla_status"]:
        project.sla_status = metrics["sla_status"]
    return metrics


def calculate_revenue_metrics(now: datetime | None = None) -> dict[str, object]:
    now = ensure_aware(now) or utcnow()
    window_start = now - timedelta(days=30)

    products = {
        product.stripe_price_id: product
        for product in BillingProduct.query.filter(
            BillingProduct.stripe_price_id.isnot(None)
        ).all()
    }

    mrr_cents = 0
    active_subscriptions = 0
    new_subscriptions = 0
    canceled_subscriptions = 0

    for subscription in Subscription.query.all():
        product = products.get(subscription.stripe_price_id)
        if product is None or product.billing_type != "subscription":
            continue

        created_at = ensure_aware(subscription.created_at)
        if subscription.status in ACTIVE_SUBSCRIPTION_STATUSES:
            mrr_cents += product.monthly_price_cents or 0
            active_subscriptions += 1
        if created_at >= window_start:
            new_subscriptions += 1
            if subscription.status == "canceled":
                canceled_subscriptions += 1

    one_time_cents = 0
    for invoice in Invoice.query.filter_by(status="paid").all():
        if ensure_aware(invoice.created_at) >= window_start:
            one_time_cents += invoice.amount_due or 0

    starting_total = active_subscriptions + canceled_subscriptions
    churn_rate = (
        canceled_subscriptions / starting_total * 100 if starting_total > 0 else 0.0
    )

    return {
        "mrr": round(mrr_cents / 100),
        "active_subscriptions": active_subscriptions,
        "new_subscriptions_30_days": new_subscriptions,
        "canceled_subscriptions_30_days": canceled_subscriptions,
        "churn_rate": round(churn_rate, 2),
        "one_time_revenue_30_days": round(one_time_cents / 100, 2),
    }


def serialize_client(client: Client, *, include_billing: bool = True) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": client.id,
        "business_name": client.business_name,
        "contact_name": client.contact_name,
        "email": client.email,
        "billing_email": client.billing_email,
        "phone": client.phone,
        "website_url": client.website_url,
        "status": client.status,
        "sms_opt_in": client.sms_opt_in,
        "service_status": client.service_status,
        "portal_enabled": bool(client.portal_password_hash),
        "created_at": isoformat_or_none(client.created_at),
    }
    if include_billing:
        payload.update(
            {
                "notes": client.notes,
                "stripe_customer_id": client.stripe_customer_id,
                "stripe_subscription_id": client.stripe_subscription_id,
                "access_status": client.access_status,
                "access_override": client.access_override,
                "billing_escalation_stage": client.billing_escalation_stage,
                "billing_grace_until": isoformat_or_none(client.billing_grace_until),
                "last_billing_notice_sent": isoformat_or_none(
                    client.last_billing_notice_sent
                ),
                "cancellation_reason": client.cancellation_reason,
                "cancellation_effective_date": isoformat_or_none(
                    client.cancellation_effective_date
                ),
            }
        )
    else:
        payload["access_status"] = client.access_status
    return payload


def serialize_task(task: Task) -> dict[str, object]:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "due_date": isoformat_or_none(task.due_date),
    }


def serialize_milestone(milestone: Milestone) -> dict[str, object]:
    return {
        "id": milestone.id,
        "name": milestone.name,
        "amount_cents": milestone.amount_cents,
        "status": milestone.status,
        "order_index": milestone.order_index,
        "stripe_invoice_id": milestone.stripe_invoice_id,
    }


def serialize_project(project: Project, now: datetime | None = None) -> dict[str, object]:
    metrics = refresh_project_sla(project, now)
    client = project.client
    return {
        "id": project.id,
        "title": project.title or "Untitled Project",
        "description": project.description or "",
        "status": project.status or "draft",
        "progress_percent": project.progress_percent or 0,
        "client_id": project.client_id,
        "client": {"business_name": client.business_name if client else "N/A"},
        "required_deposit_cents": project.required_deposit_cents,
        "deposit_paid": bool(project.deposit_paid),
        "service_status": project.service_status or "onboarding",
        "sla_days": project.sla_days,
        "sla_start_date": isoformat_or_none(project.sla_start_date),
        "sla_due_date": isoformat_or_none(project.sla_due_date),
        "sla_status": metrics["sla_status"],
        "sla_days_remaining": metrics["days_remaining"],
        "sla_expected_progress": metrics["expected_progress"],
        "sla_paused_at": isoformat_or_none(project.sla_paused_at),
        "sla_resume_offset_days": project.sla_resume_offset_days or 0,
        "tasks": [serialize_task(task) for task in ensure_list(project.tasks)],
        "milestones": [
            serialize_milestone(milestone) for milestone in ensure_list(project.milestones)
        ],
    }


def serialize_invoice(invoice: Invoice) -> dict[str, object]:
    return {
        "id": invoice.id,
        "client_id": invoice.client_id,
        "stripe_invoice_id": invoice.stripe_invoice_id,
        "status": invoice.status,
        "hosted_invoice_url": invoice.hosted_invoice_url,
        "pdf_url": invoice.pdf_url,
        "amount_due": invoice.amount_due,
        "amount_display": format_cents(invoice.amount_due),
        "currency": invoice.currency,
        "due_date": isoformat_or_none(invoice.due_date),
        "disable_reminders": invoice.disable_reminders,
        "last_reminder_sent_at": isoformat_or_none(invoice.last_reminder_sent_at),
        "created_at": isoformat_or_none(invoice.created_at),
    }


def serialize_subscription(subscription: Subscription) -> dict[str, object]:
    return {
        "id": subscription.id,
        "stripe_subscription_id": subscription.stripe_subscription_id,
        "stripe_price_id": subscription.stripe_price_id,
        "status": subscription.status,
        "current_period_end": isoformat_or_none(subscription.current_period_end),
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


def serialize_billing_product(product: BillingProduct) -> dict[str, object]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "billing_type": product.billing_type,
        "amount_cents": product.amount_cents,
        "monthly_price_cents": product.monthly_price_cents,
        "currency": product.currency,
        "stripe_product_id": product.stripe_product_id,
        "stripe_price_id": product.stripe_price_id,
        "bundled_with_product_id": product.bundled_with_product_id,
        "is_active": product.is_active,
    }


def serialize_addon(addon: AddonCatalogItem) -> dict[str, object]:
    return {
        "id": addon.id,
        "key": addon.key,
        "name": addon.name,
        "description": addon.description,
        "billing_type": addon.billing_type,
        "price_cents": addon.price_cents,
        "setup_fee_cents": addon.setup_fee_cents,
        "monthly_price_cents": addon.monthly_price_cents,
        "price_label": addon.price_label,
        "is_active": addon.is_active,
        "sort_order": addon.sort_order,
    }


def serialize_addon_request(addon_request: ClientAddonRequest) -> dict[str, object]:
    return {
        "id": addon_request.id,
        "client_id": addon_request.client_id,
        "addon_key": addon_request.addon_key,
        "addon_name": addon_request.addon_name,
        "status": addon_request.status,
        "notes": addon_request.notes,
        "requested_at": isoformat_or_none(addon_request.requested_at),
        "resolved_at": isoformat_or_none(addon_request.resolved_at),
    }


def serialize_sms_message(message: SmsMessage) -> dict[str, object]:
    return {
        "id": message.id,
        "client_id": message.client_id,
        "to": message.to_number,
        "body": message.body,
        "status": message.status,
        "sid": message.twilio_sid,
        "error": message.error_message,
        "created_at": isoformat_or_none(message.created_at),
    }


def serialize_analysis_lead(analysis: WebsiteAnalysis) -> dict[str, object]:
    return {
        "id": analysis.id,
        "website_url": analysis.website_url,
        "business_name": analysis.business_name,
        "industry": analysis.industry,
        "contact_email": analysis.contact_email,
        "tool": analysis.tool,
        "overall_score": analysis.overall_score,
        "grade": analysis.grade,
        "created_at": isoformat_or_none(analysis.created_at),
    }


def evaluate_client_access(client: Client, now: datetime | None = None) -> dict[str, object]:
    """Decide whether a client may use the project portal right now."""

    now = ensure_aware(now) or utcnow()

    if client.access_override:
        return {"has_access": True, "reason": "override"}

    has_active_subscription = (
        Subscription.query.filter(
            Subscription.client_id == client.id,
            Subscription.status.in_(sorted(ACTIVE_SUBSCRIPTION_STATUSES)),
        ).count()
        > 0
    )

    overdue = False
    for invoice in Invoice.query.filter(
        Invoice.client_id == client.id,
        Invoice.status.in_(sorted(ACCESS_CHECK_INVOICE_STATUSES)),
    ):
        due = ensure_aware(invoice.due_date)
        if invoice.status == "past_due" or (due is not None and due < now):
            overdue = True
            break

    if has_active_subscription and not overdue:
        return {"has_access": True, "reason": "active"}
    if overdue:
        return {"has_access": False, "reason": "overdue"}
    return {"has_access": False, "reason": "no_subscription"}


def get_effective_smtp_settings(app: Flask) -> dict[str, object]:
    config = NotificationConfig.query.first()

    def _pick(attribute: str, config_key: str):
        value = getattr(config, attribute, None) if config else None
        if isinstance(value, str):
            value = value.strip() or None
        return value if value is not None else app.config.get(config_key)

    # Port and TLS come from the stored row only once it holds full credentials.
    stored = config is not None and config.smtp_ready()
    port = _coerce_int(config.smtp_port if stored else app.config.get("SMTP_PORT")) or 587
    use_tls = config.use_tls if stored else is_truthy(app.config.get("SMTP_USE_TLS", True))
    username = _pick("smtp_username", "SMTP_USERNAME")
    return {
        "host": _pick("smtp_host", "SMTP_HOST"),
        "port": port,
        "use_tls": bool(use_tls),
        "username": username,
        "password": _pick("smtp_password", "SMTP_PASSWORD"),
        "from_email": _pick("from_email", "SMTP_FROM_EMAIL") or username,
        "from_name": _pick("from_name", "SMTP_FROM_NAME") or app.config.get("SITE_NAME"),
        "reply_to_email": _pick("reply_to_email", "SMTP_REPLY_TO"),
    }


def send_email_via_smtp(app: Flask, recipient: str, subject: str, body: str) -> bool:
    if not recipient:
        return False

    settings = get_effective_smtp_settings(app)
    host = (settings["host"] or "").strip()
    username = (settings["username"] or "").strip()
    password = settings["password"] or ""
    from_email = (settings["from_email"] or "").strip()
    if not host or not username or not password or not from_email:
        app.logger.warning("SMTP is not configured; skipping %r", subject)
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr(((settings["from_name"] or "").strip(), from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(utcnow())
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    if settings["reply_to_email"]:
        message["Reply-To"] = settings["reply_to_email"]
    message.set_content(body)

    try:
        with smtplib.SMTP(host, settings["port"], timeout=10) as smtp:
            smtp.ehlo()
            if settings["use_tls"]:
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            smtp.login(username, password)
            smtp.send_message(message)
        return True
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external service dependency
        app.logger.warning("SMTP delivery to %s failed: %s", recipient, exc)
        return False


def dispatch_email(recipient: str | None, subject: str, body: str) -> bool:
    app = current_app._get_current_object()
    if not recipient:
        return False

    sender = app.config.get("EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom hook failure
            app.logger.warning("Custom email sender failed: %s", exc)
            return False

    return send_email_via_smtp(app, recipient, subject, body)


def should_send_billing_notifications() -> bool:
    config = NotificationConfig.query.first()
    if config is None:
        return True
    return bool(config.notify_billing_activity)


def _format_notice_date(value: datetime | None) -> str:
    if value is None:
        return "the grace period deadline"
    return ensure_aware(value).strftime("%B %d, %Y")


def build_billing_notification(
    client_name: str, stage: int, grace_until: datetime | None = None
) -> tuple[str, str]:
    grace_date = _format_notice_date(grace_until)
    if stage == 1:
        return (
            f"Action Required – Invoice Past Due for {client_name}",
            f"Dear {client_name},\n\n"
            "Your recent invoice is now overdue. Please pay it by "
            f"{grace_date} to avoid any interruption to your service.\n",
        )
    if stage == 2:
        return (
            f"Final Notice – Service Access At Risk for {client_name}",
            f"Dear {client_name},\n\n"
            "This is your final reminder. Access to your project portal will be "
            f"restricted after {grace_date} if the invoice remains unpaid.\n",
        )
    if stage == 3:
        return (
            f"Access Restored for {client_name}",
            f"Dear {client_name},\n\n"
            "Your payment has been processed and access to your project portal "
            "has been restored. Thank you!\n",
        )
    raise ValueError(f"Unknown billing notification stage: {stage}")


def send_billing_notification(
    client: Client, stage: int, grace_until: datetime | None = None
) -> bool:
    if not should_send_billing_notifications():
        return False
    subject, body = build_billing_notification(client.business_name, stage, grace_until)
    sent = dispatch_email(client.billing_contact_email, subject, body)
    current_app.logger.info(
        "Billing stage %s notice for client %s sent=%s",
        stage,
        client.id,
        sent,
    )
    return sent


def build_invoice_reminder(
    client_name: str,
    amount_due: int,
    due_date: datetime,
    hosted_invoice_url: str,
    reminder_type: str,
) -> tuple[str, str]:
    amount = format_cents(amount_due)
    due_label = _format_notice_date(due_date)
    if reminder_type == "upcoming":
        subject = f"Upcoming invoice for {client_name} due {due_label}"
        intro = f"This is a friendly reminder that your invoice for {amount} is due on {due_label}."
    else:
        subject = f"Overdue invoice for {client_name}"
        intro = f"Your invoice for {amount} was due on {due_label} and is now past due."
    body = (
        f"Hello {client_name},\n\n"
        f"{intro}\n\n"
        f"You can review and pay it here: {hosted_invoice_url}\n"
    )
    return subject, body


def build_contact_notification(submission: ContactSubmission) -> tuple[str, str]:
    subject = f"New Contact Form Submission from {submission.full_name}"
    lines = [
        f"Form: {submission.form_type}",
        f"Name: {submission.full_name}",
        f"Email: {submission.email}",
        f"Phone: {submission.phone or 'Not provided'}",
        "",
        submission.message,
    ]
    return subject, "\n".join(lines)


def build_addon_request_notification(
    client: Client, addon_request: ClientAddonRequest
) -> tuple[str, str]:
    subject = f"Add-on Request: {addon_request.addon_name} for {client.business_name}"
    lines = [
        f"Client: {client.business_name}",
        f"Email: {client.email}",
        f"Add-on: {addon_request.addon_name} ({addon_request.addon_key})",
        "",
        addon_request.notes or "No notes provided.",
    ]
    return subject, "\n".join(lines)


def get_twilio_settings(app: Flask) -> dict[str, str | None]:
    config = TwilioConfig.query.first()
    if config and config.is_ready():
        return {
            "account_sid": config.account_sid,
            "auth_token": config.auth_token,
            "phone_number": config.phone_number,
        }
    return {
        "account_sid": app.config.get("TWILIO_ACCOUNT_SID"),
        "auth_token": app.config.get("TWILIO_AUTH_TOKEN"),
        "phone_number": app.config.get("TWILIO_PHONE_NUMBER"),
    }


def twilio_ready(app: Flask) -> bool:
    if callable(app.config.get("SMS_SENDER")):
        return True
    settings = get_twilio_settings(app)
    return all((settings[key] or "").strip() for key in settings)


def build_twilio_client(app: Flask) -> TwilioApiClient:
    settings = get_twilio_settings(app)
    return TwilioApiClient(
        settings["account_sid"],
        settings["auth_token"],
        settings["phone_number"],
        timeout=float(app.config.get("TWILIO_API_TIMEOUT", 10.0)),
    )


def send_sms_message(
    app: Flask, to_number: str, body: str, client: Client | None = None
) -> SmsMessage:
    """Send a text message and record the attempt.

    The SmsMessage row is committed whether or not Twilio accepted the message;
    a TwilioApiError is re-raised after the failure is stored.
    """

    message = SmsMessage(
        client_id=client.id if client else None,
        to_number=to_number,
        body=body,
        status="queued",
    )
    db.session.add(message)

    sender = app.config.get("SMS_SENDER")
    try:
        if callable(sender):
            sid = sender(to_number, body)
        else:
            sid = build_twilio_client(app).send_message(to_number, body)
    except TwilioApiError as exc:
        message.status = "failed"
        message.error_message = str(exc)[:500]
        db.session.commit()
        app.logger.warning("SMS delivery to %s failed: %s", to_number, exc)
        raise

    message.status = "sent"
    message.twilio_sid = sid
    db.session.commit()
    app.logger.info("SMS %s sent to %s", sid, to_number)
    return message


def invalidate_dashboard_overview_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_OVERVIEW_CACHE_KEY, None)


def build_dashboard_overview(now: datetime | None = None) -> dict[str, object]:
    now = ensure_aware(now) or utcnow()

    status_counts = {status: 0 for status in CLIENT_STATUS_OPTIONS}
    restricted_clients = 0
    for client in Client.query.all():
        status_counts[client.status] = status_counts.get(client.status, 0) + 1
        if client.access_status == "restricted":
            restricted_clients += 1

    active_projects = 0
    projects_at_risk = 0
    projects_breached = 0
    for project in Project.query.all():
        if project.status == "active":
            active_projects += 1
        metrics = calculate_sla_metrics(
            project.progress_percent,
            project.sla_days,
            project.sla_start_date,
            project.sla_due_date,
            now,
        )
        if metrics["sla_status"] == "at_risk":
            projects_at_risk += 1
        elif metrics["sla_status"] == "breached":
            projects_breached += 1

    open_invoice_total = (
        db.session.query(db.func.coalesce(db.func.sum(Invoice.amount_due), 0))
        .filter(Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)))
        .scalar()
    )

    recent_leads = (
        WebsiteAnalysis.query.order_by(WebsiteAnalysis.created_at.desc()).limit(5).all()
    )

    return {
        "client_counts": status_counts,
        "total_clients": sum(status_counts.values()),
        "restricted_clients": restricted_clients,
        "active_projects": active_projects,
        "projects_at_risk": projects_at_risk,
        "projects_breached": projects_breached,
        "open_invoice_total_cents": int(open_invoice_total or 0),
        "recent_leads": [serialize_analysis_lead(lead) for lead in recent_leads],
        "generated_at": now.isoformat(),
    }


def get_dashboard_overview_snapshot(app: Flask) -> dict[str, object]:
    ttl_seconds = float(
        app.config.get(
            "DASHBOARD_OVERVIEW_CACHE_SECONDS", DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT
        )
    )
    now_monotonic = time.monotonic()
    cached = app.config.get(DASHBOARD_OVERVIEW_CACHE_KEY)

    if cached and cached.get("expires_at", 0) > now_monotonic:
        return cached["payload"]

    payload = build_dashboard_overview()
    if ttl_seconds > 0:
        app.config[DASHBOARD_OVERVIEW_CACHE_KEY] = {
            "expires_at": now_monotonic + ttl_seconds,
            "payload": payload,
        }
    return payload


def _dashboard_overview_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_overview_cache()


for model in (Client, Project, Invoice, WebsiteAnalysis):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_overview_cache_invalidator)


def ensure_stripe_customer(client: Client) -> str | None:
    if not stripe_active():
        return None

    if client.stripe_customer_id:
        return client.stripe_customer_id

    email = client.billing_contact_email
    if not email:
        raise ValueError("Client is missing a billing contact email.")

    customer = stripe.Customer.create(
        name=client.business_name,
        email=email,
        phone=client.phone,
        metadata={"client_id": str(client.id)},
    )
    client.stripe_customer_id = _stripe_field(customer, "id")
    db.session.flush()
    current_app.logger.info(
        "Created Stripe customer %s for client %s", client.stripe_customer_id, client.id
    )
    return client.stripe_customer_id


def create_client_subscription(client: Client, price_id: str) -> dict[str, object]:
    customer_id = ensure_stripe_customer(client)
    subscription = stripe.Subscription.create(
        customer=customer_id,
        items=[{"price": price_id}],
        payment_behavior="default_incomplete",
        expand=["latest_invoice.payment_intent"],
        metadata={"client_id": str(client.id)},
    )

    subscription_id = _stripe_field(subscription, "id")
    status = _stripe_field(subscription, "status") or "incomplete"
    latest_invoice = _stripe_field(subscription, "latest_invoice")
    payment_intent = _stripe_field(latest_invoice, "payment_intent")
    requires_action = _stripe_field(payment_intent, "status") == "requires_action"

    record = Subscription.query.filter_by(stripe_subscription_id=subscription_id).first()
    if record is None:
        record = Subscription(client_id=client.id, stripe_subscription_id=subscription_id)
        db.session.add(record)
    record.stripe_price_id = price_id
    record.status = status
    record.current_period_end = from_unix_timestamp(
        _stripe_field(subscription, "current_period_end")
    )

    return {
        "subscription_id": subscription_id,
        "status": status,
        "requires_action": requires_action,
        "hosted_invoice_url": (
            _stripe_field(latest_invoice, "hosted_invoice_url") if requires_action else None
        ),
    }


def days_until_due_for(due_date: datetime | None, now: datetime | None = None) -> int:
    if due_date is None:
        return DEFAULT_INVOICE_DAYS_UNTIL_DUE
    now = ensure_aware(now) or utcnow()
    days = math.ceil((ensure_aware(due_date) - now).total_seconds() / 86400)
    return max(1, days)


def upsert_invoice_from_stripe(client: Client, stripe_invoice: object) -> Invoice:
    stripe_invoice_id = _stripe_field(stripe_invoice, "id")
    invoice = Invoice.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()
    if invoice is None:
        invoice = Invoice(client_id=client.id, stripe_invoice_id=stripe_invoice_id)
        db.session.add(invoice)

    invoice.status = _stripe_field(stripe_invoice, "status") or invoice.status or "draft"
    invoice.hosted_invoice_url = (
        _stripe_field(stripe_invoice, "hosted_invoice_url") or invoice.hosted_invoice_url
    )
    invoice.pdf_url = _stripe_field(stripe_invoice, "invoice_pdf") or invoice.pdf_url
    amount_due = _coerce_int(_stripe_field(stripe_invoice, "amount_due"))
    if amount_due is not None:
        invoice.amount_due = amount_due
    invoice.currency = _stripe_field(stripe_invoice, "currency") or invoice.currency
    due_date = from_unix_timestamp(_stripe_field(stripe_invoice, "due_date"))
    if due_date is not None:
        invoice.due_date = due_date
    return invoice


def create_client_invoice(
    client: Client,
    line_items: list[dict[str, object]],
    due_date: datetime | None = None,
    metadata: dict[str, str] | None = None,
) -> Invoice:
    customer_id = ensure_stripe_customer(client)
    currency = STRIPE_DEFAULT_CURRENCY

    for item in line_items:
        stripe.InvoiceItem.create(
            customer=customer_id,
            amount=item["amount_cents"],
            currency=currency,
            description=item["description"],
        )

    stripe_invoice = stripe.Invoice.create(
        customer=customer_id,
        collection_method="send_invoice",
        days_until_due=days_until_due_for(due_date),
        pending_invoice_items_behavior="include",
        metadata={"client_id": str(client.id), **(metadata or {})},
    )
    stripe_invoice_id = _stripe_field(stripe_invoice, "id")
    sent_invoice = stripe.Invoice.send_invoice(stripe_invoice_id)

    invoice = upsert_invoice_from_stripe(client, sent_invoice)
    if invoice.status == "draft":
        invoice.status = "open"
    if due_date is not None and invoice.due_date is None:
        invoice.due_date = ensure_aware(due_date)
    current_app.logger.info(
        "Sent Stripe invoice %s to client %s for %s",
        stripe_invoice_id,
        client.id,
        format_cents(invoice.amount_due),
    )
    return invoice


def apply_invoice_discount(
    invoice: Invoice, discount_type: str, discount_value: int, applied_by: str | None = None
) -> InvoiceDiscount:
    if invoice.status not in OPEN_INVOICE_STATUSES:
        raise ValueError("Discounts can only be applied to open or past due invoices.")
    if discount_type not in DISCOUNT_TYPES:
        raise ValueError("Discount type must be 'percentage' or 'fixed'.")
    if discount_type == "percentage" and not 1 <= discount_value <= 100:
        raise ValueError("Percentage discounts must be between 1 and 100.")
    if discount_type == "fixed" and discount_value < 100:
        raise ValueError("Fixed discounts must be at least 100 cents.")

    coupon_id = f"discount_{invoice.stripe_invoice_id}_{int(time.time() * 1000)}"
    coupon_params: dict[str, object] = {
        "id": coupon_id,
        "duration": "once",
        "name": f"Invoice discount for {invoice.stripe_invoice_id}",
    }
    if discount_type == "percentage":
        coupon_params["percent_off"] = discount_value
    else:
        coupon_params["amount_off"] = discount_value
        coupon_params["currency"] = invoice.currency or STRIPE_DEFAULT_CURRENCY
    stripe.Coupon.create(**coupon_params)

    stripe.Invoice.modify(invoice.stripe_invoice_id, discounts=[{"coupon": coupon_id}])
    updated = stripe.Invoice.send_invoice(invoice.stripe_invoice_id)
    amount_due = _coerce_int(_stripe_field(updated, "amount_due"))
    if amount_due is not None:
        invoice.amount_due = amount_due

    discount = InvoiceDiscount(
        invoice_id=invoice.id,
        discount_type=discount_type,
        discount_value=discount_value,
        stripe_coupon_id=coupon_id,
        applied_by=applied_by,
    )
    db.session.add(discount)
    return discount


def create_billing_product(
    name: str,
    billing_type: str,
    *,
    description: str | None = None,
    amount_cents: int | None = None,
    monthly_price_cents: int | None = None,
    bundled_with_product_id: int | None = None,
) -> BillingProduct:
    if billing_type not in BILLING_TYPES:
        raise ValueError("Billing type must be 'one_time' or 'subscription'.")
    if billing_type == "subscription":
        if not monthly_price_cents or monthly_price_cents <= 0:
            raise ValueError("Subscriptions require a monthly price greater than zero.")
        unit_amount = monthly_price_cents
    else:
        if not amount_cents or amount_cents <= 0:
            raise ValueError("One-time products require an amount greater than zero.")
        unit_amount = amount_cents

    price_data: dict[str, object] = {
        "currency": STRIPE_DEFAULT_CURRENCY,
        "unit_amount": unit_amount,
    }
    if billing_type == "subscription":
        price_data["recurring"] = {"interval": "month"}

    product_params: dict[str, object] = {"name": name, "default_price_data": price_data}
    if description:
        product_params["description"] = description
    stripe_product = stripe.Product.create(**product_params)

    default_price = _stripe_field(stripe_product, "default_price")
    if not isinstance(default_price, str):
        default_price = _stripe_field(default_price, "id")

    product = BillingProduct(
        name=name,
        description=description,
        billing_type=billing_type,
        amount_cents=amount_cents if billing_type == "one_time" else None,
        monthly_price_cents=monthly_price_cents if billing_type == "subscription" else None,
        stripe_product_id=_stripe_field(stripe_product, "id"),
        stripe_price_id=default_price,
        bundled_with_product_id=bundled_with_product_id,
    )
    db.session.add(product)
    return product


def create_deposit_checkout(
    project: Project,
    success_url: str,
    cancel_url: str,
    amount_cents: int,
    description: str | None = None,
) -> tuple[Deposit, str]:
    client = project.client
    customer_id = ensure_stripe_customer(client)
    metadata = {
        "client_id": str(client.id),
        "project_id": str(project.id),
        "payment_type": STRIPE_PAYMENT_TYPE_DEPOSIT,
    }
    checkout = stripe.checkout.Session.create(
        mode="payment",
        customer=customer_id,
        line_items=[
            {
                "price_data": {
                    "currency": STRIPE_DEFAULT_CURRENCY,
                    "unit_amount": amount_cents,
                    "product_data": {
                        "name": description or f"Project deposit: {project.title}",
                    },
                },
                "quantity": 1,
            }
        ],
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
    )

    deposit = Deposit(
        client_id=client.id,
        project_id=project.id,
        amount_cents=amount_cents,
        status="pending",
        stripe_checkout_session_id=_stripe_field(checkout, "id"),
    )
    db.session.add(deposit)
    return deposit, _stripe_field(checkout, "url")


def create_billing_portal_url(client: Client, return_url: str | None) -> str:
    if not return_url:
        raise RuntimeError("Customer portal return URL is not configured.")
    customer_id = ensure_stripe_customer(client)
    portal = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
    return _stripe_field(portal, "url")


def report_checkout_idempotency_key(
    business_name: str, location: str, lite_score: int, competitor_radius: int, origin: str
) -> str:
    raw = f"{business_name}|{location}|{lite_score}|{competitor_radius}|{origin}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def create_report_checkout(
    business_name: str,
    location: str,
    lite_score: object,
    competitor_radius: object,
    origin: str,
) -> object:
    score = max(0, min(100, round(_coerce_float(lite_score) or 0)))
    radius = max(0, round(_coerce_float(competitor_radius) or 0))
    origin = origin.rstrip("/")

    return stripe.checkout.Session.create(
        mode="payment",
        line_items=[
            {
                "price_data": {
                    "currency": STRIPE_DEFAULT_CURRENCY,
                    "unit_amount": ANALYSIS_REPORT_PRICE_CENTS,
                    "product_data": {
                        "name": ANALYSIS_REPORT_PRODUCT_NAME,
                        "description": ANALYSIS_REPORT_PRODUCT_DESCRIPTION,
                    },
                },
                "quantity": 1,
            }
        ],
        success_url=f"{origin}/report/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/report/cancel",
        metadata={
            "business_name": business_name,
            "location": location,
            "lite_score": str(score),
            "competitor_radius": str(radius),
        },
        idempotency_key=report_checkout_idempotency_key(
            business_name, location, score, radius, origin
        ),
    )


def _resolve_event_client(data_object: object) -> Client | None:
    customer_id = _stripe_field(data_object, "customer")
    if isinstance(customer_id, str) and customer_id:
        client = Client.query.filter_by(stripe_customer_id=customer_id).first()
        if client is not None:
            return client

    client_id = _coerce_int(_metadata_dict(data_object).get("client_id"))
    if client_id is not None:
        return db.session.get(Client, client_id)
    return None


def restore_client_access(client: Client) -> None:
    was_escalated = client.billing_escalation_stage > 0 or client.access_status != "active"
    client.reset_billing_flags()
    if was_escalated:
        send_billing_notification(client, 3)


def _mark_deposit_paid(deposit: Deposit) -> None:
    deposit.status = "paid"
    project = deposit.project
    if project is not None:
        project.deposit_paid = True
        project.status = "active"


def handle_stripe_event(event: object, client: Client | None = None) -> bool:
    event_type = _stripe_field(event, "type", "")
    data_object = _stripe_field(_stripe_field(event, "data"), "object")
    if not data_object:
        return False

    handled = False
    if event_type in {"invoice.paid", "checkout.session.completed"} and client is not None:
        restore_client_access(client)
        handled = True

    if event_type == "checkout.session.completed":
        handled = _handle_checkout_completed(data_object) or handled
    elif event_type.startswith("invoice."):
        handled = _handle_invoice_event(event_type, data_object, client) or handled
    elif event_type in {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }:
        handled = _handle_subscription_event(event_type, data_object, client) or handled

    return handled


def _handle_checkout_completed(session_object: object) -> bool:
    metadata = _metadata_dict(session_object)
    if metadata.get("payment_type") != STRIPE_PAYMENT_TYPE_DEPOSIT:
        return False

    session_id = _stripe_field(session_object, "id")
    deposit = Deposit.query.filter_by(stripe_checkout_session_id=session_id).first()
    if deposit is None:
        project_id = _coerce_int(metadata.get("project_id"))
        client_id = _coerce_int(metadata.get("client_id"))
        if project_id is None or client_id is None:
            return False
        deposit = Deposit(
            client_id=client_id,
            project_id=project_id,
            amount_cents=_coerce_int(_stripe_field(session_object, "amount_total")) or 0,
            stripe_checkout_session_id=session_id,
        )
        db.session.add(deposit)

    payment_intent = _stripe_field(session_object, "payment_intent")
    if isinstance(payment_intent, str):
        deposit.stripe_payment_intent_id = payment_intent
    _mark_deposit_paid(deposit)
    current_app.logger.info("Deposit %s paid", session_id)
    return True


def _handle_invoice_event(event_type: str, stripe_invoice: object, client: Client | None) -> bool:
    if client is None:
        current_app.logger.warning(
            "No client found for Stripe invoice %s", _stripe_field(stripe_invoice, "id")
        )
        return False

    invoice = upsert_invoice_from_stripe(client, stripe_invoice)
    stripe_invoice_id = invoice.stripe_invoice_id
    metadata = _metadata_dict(stripe_invoice)
    deposit = Deposit.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()

    if event_type in {"invoice.payment_succeeded", "invoice.paid"}:
        if deposit is not None:
            _mark_deposit_paid(deposit)
        milestone_id = _coerce_int(metadata.get("milestone_id"))
        if milestone_id is not None:
            milestone = db.session.get(Milestone, milestone_id)
            if milestone is not None:
                milestone.status = "paid"
                milestone.stripe_invoice_id = stripe_invoice_id
    elif event_type == "invoice.payment_failed":
        if deposit is not None:
            deposit.status = "failed"
        if invoice.status == "open":
            due = ensure_aware(invoice.due_date) or utcnow()
            client.access_status = "grace"
            client.billing_escalation_stage = 1
            client.billing_grace_until = due + timedelta(days=GRACE_PERIOD_DAYS)
            client.last_billing_notice_sent = utcnow()
            current_app.logger.info(
                "Client %s entered billing grace until %s",
                client.id,
                client.billing_grace_until.isoformat(),
            )
    return True


def _handle_subscription_event(
    event_type: str, stripe_subscription: object, client: Client | None
) -> bool:
    if client is None:
        return False

    subscription_id = _stripe_field(stripe_subscription, "id")
    status = _stripe_field(stripe_subscription, "status") or "incomplete"
    if event_type == "customer.subscription.deleted":
        status = "canceled"

    record = Subscription.query.filter_by(stripe_subscription_id=subscription_id).first()
    if record is None:
        record = Subscription(client_id=client.id, stripe_subscription_id=subscription_id)
        db.session.add(record)

    items = _stripe_field(_stripe_field(stripe_subscription, "items"), "data") or []
    if items:
        price = _stripe_field(items[0], "price")
        record.stripe_price_id = price if isinstance(price, str) else _stripe_field(price, "id")
    record.status = status
    record.cancel_at_period_end = bool(
        _stripe_field(stripe_subscription, "cancel_at_period_end", False)
    )
    period_end = from_unix_timestamp(_stripe_field(stripe_subscription, "current_period_end"))
    if period_end is not None:
        record.current_period_end = period_end

    if status in ACTIVE_SUBSCRIPTION_STATUSES:
        client.stripe_subscription_id = subscription_id
        client.access_status = "active"
    elif status == "canceled":
        if client.stripe_subscription_id == subscription_id:
            client.stripe_subscription_id = None
        client.access_status = "restricted"
    return True


def record_payment_event(
    event_id: str, event_type: str, client: Client | None, payload: object
) -> PaymentEvent:
    record = PaymentEvent(
        stripe_event_id=event_id,
        type=event_type,
        client_id=client.id if client else None,
        payload=payload if isinstance(payload, dict) else None,
    )
    db.session.add(record)
    return record


def _first_overdue_invoice(client: Client, now: datetime) -> Invoice | None:
    candidates = [
        invoice
        for invoice in client.invoices
        if invoice.status in OPEN_INVOICE_STATUSES
        and invoice.due_date is not None
        and ensure_aware(invoice.due_date) < now
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda invoice: ensure_aware(invoice.due_date))


def run_billing_automation(now: datetime | None = None) -> list[dict[str, object]]:
    """Escalate clients with overdue invoices and reset the rest.

    Stages only move forward within a run: 1 (first reminder), 2 (final
    notice), 3 (restricted).
    """

    now = ensure_aware(now) or utcnow()
    actions: list[dict[str, object]] = []

    for client in Client.query.filter_by(access_override=False).order_by(Client.id).all():
        overdue_invoice = _first_overdue_invoice(client, now)

        if overdue_invoice is None:
            if (
                client.access_status != "active"
                or client.billing_escalation_stage != 0
                or client.billing_grace_until is not None
            ):
                client.reset_billing_flags()
                actions.append({"client_id": client.id, "action": "reset_flags"})
            continue

        due = ensure_aware(overdue_invoice.due_date)
        days_overdue = math.floor((now - due).total_seconds() / 86400)
        last_notice = ensure_aware(client.last_billing_notice_sent)
        sent_recently = last_notice is not None and now - last_notice < timedelta(hours=24)
        stage = client.billing_escalation_stage or 0

        if days_overdue > GRACE_PERIOD_DAYS and stage < 3:
            client.access_status = "restricted"
            client.billing_escalation_stage = 3
            actions.append({"client_id": client.id, "action": "restricted"})
        elif days_overdue >= FINAL_NOTICE_DAY and stage < 2 and not sent_recently:
            _escalate(client, 2, due, now)
            actions.append({"client_id": client.id, "action": "final_notice"})
        elif days_overdue >= REMINDER_DAY and stage < 1 and not sent_recently:
            _escalate(client, 1, due, now)
            actions.append({"client_id": client.id, "action": "first_reminder"})

    db.session.commit()
    for action in actions:
        current_app.logger.info(
            "Billing automation for client %s: %s", action["client_id"], action["action"]
        )
    return actions


def _escalate(client: Client, stage: int, due: datetime, now: datetime) -> None:
    client.billing_escalation_stage = stage
    client.access_status = "grace"
    client.billing_grace_until = due + timedelta(days=GRACE_PERIOD_DAYS)
    client.last_billing_notice_sent = now
    send_billing_notification(client, stage, client.billing_grace_until)


def send_invoice_reminders(now: datetime | None = None) -> list[str]:
    now = ensure_aware(now) or utcnow()
    reminders_sent: list[str] = []

    invoices = Invoice.query.filter(
        Invoice.status.in_(sorted(OPEN_INVOICE_STATUSES)),
        Invoice.disable_reminders.is_(False),
    ).order_by(Invoice.id)

    for invoice in invoices:
        client = invoice.client
        email = client.billing_contact_email if client else None
        if invoice.due_date is None or not email or not invoice.hosted_invoice_url:
            current_app.logger.warning(
                "Skipping reminder for invoice %s: missing due date, email, or hosted URL",
                invoice.id,
            )
            continue

        due = ensure_aware(invoice.due_date)
        last_reminder = ensure_aware(invoice.last_reminder_sent_at)
        seconds_until_due = (due - now).total_seconds()

        reminder_type: str | None = None
        if invoice.status == "open":
            days_until_due = math.ceil(seconds_until_due / 86400)
            if 0 <= days_until_due <= UPCOMING_REMINDER_WINDOW_DAYS and (
                last_reminder is None or now - last_reminder > UPCOMING_REMINDER_INTERVAL
            ):
                reminder_type = "upcoming"
        elif invoice.status == "past_due":
            days_past_due = math.floor(-seconds_until_due / 86400)
            if days_past_due >= OVERDUE_REMINDER_AFTER_DAYS and (
                last_reminder is None or now - last_reminder > OVERDUE_REMINDER_INTERVAL
            ):
                reminder_type = "overdue"

        if reminder_type is None:
            continue

        subject, body = build_invoice_reminder(
            client.business_name,
            invoice.amount_due,
            due,
            invoice.hosted_invoice_url,
            reminder_type,
        )
        dispatch_email(email, subject, body)
        invoice.last_reminder_sent_at = now
        reminders_sent.append(
            f"{reminder_type} reminder sent for {client.business_name} (Invoice {invoice.id})"
        )

    db.session.commit()
    current_app.logger.info(
        "Invoice reminder check complete. Sent %s reminders.", len(reminders_sent)
    )
    return reminders_sent


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "agency.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    smtp_port_env = os.environ.get("SMTP_PORT")
    try:
        smtp_port = int(smtp_port_env) if smtp_port_env else 587
    except ValueError:
        smtp_port = 587

    default_config = {
        "SECRET_KEY": secret_key,
        "CREDENTIALS_ENCRYPTION_KEY": os.environ.get("CREDENTIALS_ENCRYPTION_KEY"),
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or f"sqlite:///{db_path}",
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "SITE_NAME": os.environ.get("SITE_NAME", "Digital Agency"),
        "ADMIN_USERNAME": os.environ.get("ADMIN_USERNAME"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "CONTACT_EMAIL": os.environ.get("CONTACT_EMAIL"),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_PUBLISHABLE_KEY": os.environ.get("STRIPE_PUBLISHABLE_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "STRIPE_CUSTOMER_PORTAL_RETURN_URL": os.environ.get(
            "STRIPE_CUSTOMER_PORTAL_RETURN_URL"
        ),
        "TWILIO_ACCOUNT_SID": os.environ.get("TWILIO_ACCOUNT_SID"),
        "TWILIO_AUTH_TOKEN": os.environ.get("TWILIO_AUTH_TOKEN"),
        "TWILIO_PHONE_NUMBER": os.environ.get("TWILIO_PHONE_NUMBER"),
        "TWILIO_API_TIMEOUT": float(os.environ.get("TWILIO_API_TIMEOUT", "10")),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": smtp_port,
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_FROM_EMAIL": os.environ.get("SMTP_FROM_EMAIL"),
        "SMTP_FROM_NAME": os.environ.get("SMTP_FROM_NAME"),
        "SMTP_REPLY_TO": os.environ.get("SMTP_REPLY_TO"),
        "SMTP_USE_TLS": is_truthy(os.environ.get("SMTP_USE_TLS", "true")),
        "PAGESPEED_API_KEY": os.environ.get("PAGESPEED_API_KEY"),
        "PAGESPEED_TIMEOUT": float(os.environ.get("PAGESPEED_TIMEOUT", "30")),
        "ANALYZER_FETCH_TIMEOUT": float(os.environ.get("ANALYZER_FETCH_TIMEOUT", "15")),
        "ANALYZER_USE_MOCK": is_truthy(os.environ.get("ANALYZER_USE_MOCK")),
        "DASHBOARD_OVERVIEW_CACHE_SECONDS": float(
            os.environ.get(
                "DASHBOARD_OVERVIEW_CACHE_SECONDS",
                DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
            )
        ),
        "EMAIL_SENDER": None,
        "SMS_SENDER": None,
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    db.init_app(app)
    init_stripe(app)

    register_routes(app)
    register_commands(app)

    with app.app_context():
        db.create_all()
        ensure_client_billing_fields()
        apply_stripe_config_from_database(app)
        apply_twilio_config_from_database(app)
        ensure_notification_configuration()
        ensure_default_admin_user()

    return app


def ensure_client_billing_fields() -> None:
    inspector = inspect(db.engine)
    try:
        columns = {column["name"] for column in inspector.get_columns("clients")}
    except NoSuchTableError:
        return

    statements: list[str] = []
    if "access_override" not in columns:
        statements.append(
            "ALTER TABLE clients ADD COLUMN access_override BOOLEAN DEFAULT 0 NOT NULL"
        )
    if "billing_escalation_stage" not in columns:
        statements.append(
            "ALTER TABLE clients ADD COLUMN billing_escalation_stage INTEGER DEFAULT 0 NOT NULL"
        )
    if "billing_grace_until" not in columns:
        statements.append("ALTER TABLE clients ADD COLUMN billing_grace_until TIMESTAMP")
    if "last_billing_notice_sent" not in columns:
        statements.append("ALTER TABLE clients ADD COLUMN last_billing_notice_sent TIMESTAMP")
    if "sms_opt_in" not in columns:
        statements.append(
            "ALTER TABLE clients ADD COLUMN sms_opt_in BOOLEAN DEFAULT 0 NOT NULL"
        )

    if statements:
        with db.engine.begin() as connection:
            for statement in statements:
                connection.execute(text(statement))


def _clean_setting(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def apply_stripe_config_from_database(app: Flask) -> StripeConfig:
    config = StripeConfig.query.first()

    if config is None:
        config = StripeConfig(
            secret_key=_clean_setting(app.config.get("STRIPE_SECRET_KEY")),
            publishable_key=_clean_setting(app.config.get("STRIPE_PUBLISHABLE_KEY")),
            webhook_secret=_clean_setting(app.config.get("STRIPE_WEBHOOK_SECRET")),
            portal_return_url=_clean_setting(
                app.config.get("STRIPE_CUSTOMER_PORTAL_RETURN_URL")
            ),
        )
        db.session.add(config)
        db.session.commit()

    app.config["STRIPE_SECRET_KEY"] = config.secret_key
    app.config["STRIPE_PUBLISHABLE_KEY"] = config.publishable_key
    app.config["STRIPE_WEBHOOK_SECRET"] = config.webhook_secret
    app.config["STRIPE_CUSTOMER_PORTAL_RETURN_URL"] = config.portal_return_url

    init_stripe(app)

    return config


def apply_twilio_config_from_database(app: Flask) -> TwilioConfig | None:
    config = TwilioConfig.query.first()
    if config is None or not config.is_ready():
        return config

    app.config["TWILIO_ACCOUNT_SID"] = config.account_sid
    app.config["TWILIO_AUTH_TOKEN"] = config.auth_token
    app.config["TWILIO_PHONE_NUMBER"] = config.phone_number
    return config


def ensure_notification_configuration() -> NotificationConfig:
    config = NotificationConfig.query.first()
    if config:
        return config

    config = NotificationConfig()
    db.session.add(config)
    db.session.commit()
    return config


def ensure_default_admin_user() -> None:
    if AdminUser.query.count() > 0:
        return

    username = (current_app.config.get("ADMIN_USERNAME") or "").strip()
    password = current_app.config.get("ADMIN_PASSWORD")
    contact_email = current_app.config.get("ADMIN_EMAIL") or current_app.config.get(
        "CONTACT_EMAIL"
    )

    if not username or not password:
        current_app.logger.warning(
            "No admin users exist and ADMIN_USERNAME/ADMIN_PASSWORD were not provided."
        )
        return

    admin = AdminUser(username=username, email=contact_email)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not session.get(ADMIN_SESSION_KEY):
            return jsonify({"error": "Administrator login required."}), 401
        return func(*args, **kwargs)

    return wrapper


def client_login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        client_id = session.get(PORTAL_SESSION_KEY)
        if not client_id:
            return jsonify({"error": "Client login required."}), 401

        client = db.session.get(Client, client_id)
        if not client:
            session.pop(PORTAL_SESSION_KEY, None)
            return jsonify({"error": "Client session expired."}), 401

        g.portal_client = client
        return func(client, *args, **kwargs)

    return wrapper


def _mask_secret(value: str | None) -> str | None:
    if not value:
        return None
    if len(value) <= 4:
        return "*" * len(value)
    return f"{'*' * (len(value) - 4)}{value[-4:]}"


def _request_data() -> dict:
    if request.is_json:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}
    return request.form.to_dict()


def _clean_text(payload: dict, *keys: str) -> str:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return str(value).strip()
    return ""


def _error(message: str, status: int = 400):
    return jsonify({"error": message}), status


def _stripe_unavailable():
    return _error("Stripe is not configured.", 503)


def _apply_sla_fields(project: Project, payload: dict) -> str | None:
    if "sla_days" in payload:
        sla_days = _coerce_int(payload.get("sla_days"))
        if payload.get("sla_days") not in (None, "") and (sla_days is None or sla_days < 0):
            return "SLA days must be a non-negative whole number."
        project.sla_days = sla_days or None

    if "sla_start_date" in payload:
        raw_start = payload.get("sla_start_date")
        start = parse_datetime_value(raw_start)
        if raw_start and start is None:
            return "SLA start date must be an ISO 8601 date."
        project.sla_start_date = start

    if project.sla_days and project.sla_days > 0 and project.sla_start_date:
        project.sla_due_date = calculate_sla_due_date(
            project.sla_start_date, project.sla_days
        ) + timedelta(days=project.sla_resume_offset_days or 0)
    elif not project.sla_days:
        project.sla_due_date = None
    return None


def _apply_project_fields(project: Project, payload: dict) -> str | None:
    if "title" in payload:
        project.title = _clean_text(payload, "title") or "Untitled Project"
    if "description" in payload:
        project.description = _clean_text(payload, "description") or None
    if "status" in payload:
        status = _clean_text(payload, "status")
        if status not in PROJECT_STATUS_OPTIONS:
            return "Choose a valid project status."
        project.status = status
    if "progress_percent" in payload:
        progress = _coerce_int(payload.get("progress_percent"))
        if progress is None or not 0 <= progress <= 100:
            return "Progress must be between 0 and 100."
        project.progress_percent = progress
    if "service_status" in payload:
        project.service_status = _clean_text(payload, "service_status") or "onboarding"
    if "required_deposit_cents" in payload:
        deposit = _coerce_int(payload.get("required_deposit_cents"))
        if deposit is not None and deposit < 0:
            return "Deposit amount cannot be negative."
        project.required_deposit_cents = deposit or None
    return _apply_sla_fields(project, payload)


def _apply_client_fields(client: Client, payload: dict) -> str | None:
    if "business_name" in payload:
        business_name = _clean_text(payload, "business_name")
        if not business_name:
            return "Business name is required."
        client.business_name = business_name
    if "email" in payload:
        email = _clean_text(payload, "email").lower()
        if not is_valid_email(email):
            return "A valid email address is required."
        existing = Client.query.filter(db.func.lower(Client.email) == email).first()
        if existing and existing.id != client.id:
            return "A client with that email already exists."
        client.email = email
    if "billing_email" in payload:
        billing_email = _clean_text(payload, "billing_email").lower() or None
        if billing_email and not is_valid_email(billing_email):
            return "Billing email is not a valid address."
        client.billing_email = billing_email
    for field in ("contact_name", "phone", "website_url", "notes"):
        if field in payload:
            setattr(client, field, _clean_text(payload, field) or None)
    if "status" in payload:
        status = _clean_text(payload, "status")
        if status not in CLIENT_STATUS_OPTIONS:
            return "Choose a valid client status."
        client.status = status
    if "sms_opt_in" in payload:
        client.sms_opt_in = is_truthy(payload.get("sms_opt_in"))
    if "access_override" in payload:
        client.access_override = is_truthy(payload.get("access_override"))
    return None


def addon_key_from_name(name: str) -> str:
    key = re.sub(r"\s+", "_", name.strip().lower())
    return re.sub(r"[^a-z0-9_]", "", key)


def _apply_addon_fields(addon: AddonCatalogItem, payload: dict) -> str | None:
    if "name" in payload:
        name = _clean_text(payload, "name")
        if not name:
            return "Add-on name is required."
        addon.name = name
    if "key" in payload or not addon.key:
        key = addon_key_from_name(_clean_text(payload, "key") or addon.name or "")
        if not key:
            return "Add-on key is required."
        existing = AddonCatalogItem.query.filter_by(key=key).first()
        if existing and existing.id != addon.id:
            return "An add-on with that key already exists."
        addon.key = key
    if "description" in payload:
        addon.description = _clean_text(payload, "description") or None
    if "billing_type" in payload:
        billing_type = _clean_text(payload, "billing_type")
        if billing_type not in ADDON_BILLING_TYPES:
            return "Choose a valid add-on billing type."
        addon.billing_type = billing_type
    if "sort_order" in payload:
        sort_order = _coerce_int(payload.get("sort_order"))
        if sort_order is None:
            return "Sort order must be a whole number."
        addon.sort_order = sort_order
    if "is_active" in payload:
        addon.is_active = is_truthy(payload.get("is_active"))

    for field in ("price_cents", "setup_fee_cents", "monthly_price_cents"):
        if field in payload:
            setattr(addon, field, _coerce_int(payload.get(field)))

    # Only the prices the billing type uses are kept.
    if addon.billing_type == "one_time":
        if not addon.price_cents or addon.price_cents <= 0:
            return "One-time price must be set."
        addon.setup_fee_cents = None
        addon.monthly_price_cents = None
    elif addon.billing_type == "subscription":
        if not addon.monthly_price_cents or addon.monthly_price_cents <= 0:
            return "Monthly price must be set."
        addon.price_cents = None
        addon.setup_fee_cents = None
    else:
        if (
            not addon.setup_fee_cents
            or addon.setup_fee_cents <= 0
            or not addon.monthly_price_cents
            or addon.monthly_price_cents <= 0
        ):
            return "Setup fee and monthly price must be set."
        addon.price_cents = None
    return None


def _parse_line_items(raw_items: object) -> tuple[list[dict[str, object]], str | None]:
    items: list[dict[str, object]] = []
    for raw in ensure_list(raw_items):
        if not isinstance(raw, dict):
            return [], "Each line item needs a description and amount."
        description = str(raw.get("description") or "").strip()
        amount_cents = parse_amount_to_cents(raw.get("amount"))
        if not description or amount_cents is None or amount_cents <= 0:
            return [], "Each line item needs a description and a positive amount."
        items.append({"description": description, "amount_cents": amount_cents})
    if not items:
        return [], "At least one line item is required."
    return items, None


def register_routes(app: Flask) -> None:
    @app.errorhandler(404)
    def not_found(error):  # noqa: ARG001
        return _error("Not found.", 404)

    @app.errorhandler(403)
    def forbidden(error):  # noqa: ARG001
        return _error("You do not have access to this record.", 403)

    def _owned_by(client: Client, record_client_id: int) -> None:
        if record_client_id != client.id:
            abort(403)

    @app.get("/health")
    def health():
        return jsonify({"status": "ok", "time": utcnow().isoformat()})

    @app.post("/login")
    def login():
        payload = _request_data()
        username_or_email = _clean_text(payload, "username", "email")
        password = str(payload.get("password") or "")

        if username_or_email and password:
            admin = AdminUser.query.filter(
                or_(
                    AdminUser.username == username_or_email,
                    AdminUser.email == username_or_email,
                )
            ).first()

            if admin and admin.check_password(password):
                session[ADMIN_SESSION_KEY] = True
                session["admin_logged_in_at"] = utcnow().isoformat()
                session["admin_user_id"] = admin.id
                admin.last_login_at = utcnow()
                db.session.commit()
                return jsonify({"id": admin.id, "username": admin.username})

        return _error("Invalid credentials. Please try again.", 401)

    @app.post("/logout")
    def logout():
        session.pop(ADMIN_SESSION_KEY, None)
        session.pop("admin_logged_in_at", None)
        session.pop("admin_user_id", None)
        return jsonify({"status": "logged_out"})

    @app.post("/portal/login")
    def portal_login():
        payload = _request_data()
        email = _clean_text(payload, "email").lower()
        password = str(payload.get("password") or "").strip()

        client_record = Client.query.filter_by(email=email).first()
        if client_record and not client_record.portal_password_hash:
            return _error(
                "Your portal password has not been issued yet. Please contact support.",
                403,
            )
        if (
            client_record
            and password
            and check_password_hash(client_record.portal_password_hash, password)
        ):
            session[PORTAL_SESSION_KEY] = client_record.id
            session["portal_authenticated_at"] = utcnow().isoformat()
            return jsonify({"client_id": client_record.id})

        return _error("Invalid email or password. Please try again.", 401)

    @app.post("/portal/logout")
    def portal_logout():
        session.pop(PORTAL_SESSION_KEY, None)
        session.pop("portal_authenticated_at", None)
        return jsonify({"status": "logged_out"})

    @app.get("/admin/users")
    @login_required
    def list_admin_users():
        admins = AdminUser.query.order_by(AdminUser.username).all()
        return jsonify(
            [
                {
                    "id": admin.id,
                    "username": admin.username,
                    "email": admin.email,
                    "last_login_at": isoformat_or_none(admin.last_login_at),
                }
                for admin in admins
            ]
        )

    @app.post("/admin/users")
    @login_required
    def create_admin_user():
        payload = _request_data()
        username = _clean_text(payload, "username")
        email = _clean_text(payload, "email").lower() or None
        password = str(payload.get("password") or "")

        if not username or not password:
            return _error("Provide a username and password for the admin account.")
        if len(password) < MIN_PASSWORD_LENGTH:
            return _error("Choose an admin password with at least 8 characters.")
        if email and not is_valid_email(email):
            return _error("Provide a valid admin email address.")
        if AdminUser.query.filter_by(username=username).first():
            return _error("That admin username is already in use.")
        if email and AdminUser.query.filter_by(email=email).first():
            return _error("That admin email is already assigned to another user.")

        admin_user = AdminUser(username=username, email=email)
        admin_user.set_password(password)
        db.session.add(admin_user)
        db.session.commit()
        return jsonify({"id": admin_user.id, "username": admin_user.username}), 201

    @app.delete("/admin/users/<int:admin_id>")
    @login_required
    def delete_admin_user(admin_id: int):
        admin = AdminUser.query.get_or_404(admin_id)
        if session.get("admin_user_id") == admin.id:
            return _error("You cannot remove the administrator currently signed in.")
        if AdminUser.query.count() <= 1:
            return _error("Add another administrator before removing this account.")

        db.session.delete(admin)
        db.session.commit()
        return jsonify({"deleted": True})

    @app.get("/clients")
    @login_required
    def list_clients():
        query = Client.query
        status = request.args.get("status")
        if status:
            query = query.filter_by(status=status)
        clients = query.order_by(Client.business_name).all()
        return jsonify([serialize_client(client) for client in clients])

    @app.post("/clients")
    @login_required
    def create_client():
        payload = _request_data()
        if not _clean_text(payload, "business_name"):
            return _error("Business name is required.")
        if not is_valid_email(_clean_text(payload, "email")):
            return _error("A valid email address is required.")

        client = Client(business_name="", email="")
        payload.setdefault("status", "onboarding")
        problem = _apply_client_fields(client, payload)
        if problem:
            return _error(problem)

        db.session.add(client)
        db.session.commit()
        app.logger.info("Created client %s", client.id)
        return jsonify(serialize_client(client)), 201

    @app.get("/clients/<int:client_id>")
    @login_required
    def get_client(client_id: int):
        client = Client.query.get_or_404(client_id)
        payload = serialize_client(client)
        payload["projects"] = [serialize_project(project) for project in client.projects]
        payload["invoices"] = [serialize_invoice(invoice) for invoice in client.invoices]
        payload["subscriptions"] = [
            serialize_subscription(subscription) for subscription in client.subscriptions
        ]
        db.session.commit()
        return jsonify(payload)

    @app.patch("/clients/<int:client_id>")
    @login_required
    def update_client(client_id: int):
        client = Client.query.get_or_404(client_id)
        problem = _apply_client_fields(client, _request_data())
        if problem:
            db.session.rollback()
            return _error(problem)
        db.session.commit()
        return jsonify(serialize_client(client))

    @app.delete("/clients/<int:client_id>")
    @login_required
    def delete_client(client_id: int):
        client = Client.query.get_or_404(client_id)
        SmsMessage.query.filter_by(client_id=client.id).update({"client_id": None})
        db.session.delete(client)
        db.session.commit()
        return jsonify({"deleted": True})

    @app.get("/clients/<int:client_id>/access")
    @login_required
    def client_access(client_id: int):
        client = Client.query.get_or_404(client_id)
        return jsonify(evaluate_client_access(client))

    @app.post("/clients/<int:client_id>/portal-password")
    @login_required
    def set_portal_password(client_id: int):
        client = Client.query.get_or_404(client_id)
        password = str(_request_data().get("password") or "").strip()

        if len(password) < MIN_PASSWORD_LENGTH:
            return _error("Portal passwords must be at least 8 characters long.")

        client.portal_password_hash = generate_password_hash(password)
        client.portal_password_updated_at = utcnow()
        db.session.commit()
        return jsonify({"client_id": client.id, "portal_enabled": True})

    @app.get("/clients/<int:client_id>/projects")
    @login_required
    def list_client_projects(client_id: int):
        client = Client.query.get_or_404(client_id)
        projects = [serialize_project(project) for project in client.projects]
        db.session.commit()
        return jsonify(projects)

    @app.post("/clients/<int:client_id>/projects")
    @login_required
    def create_project(client_id: int):
        client = Client.query.get_or_404(client_id)
        payload = _request_data()

        project = Project(client_id=client.id, title="Untitled Project")
        problem = _apply_project_fields(project, payload)
        if problem:
            return _error(problem)
        if project.required_deposit_cents and "status" not in payload:
            project.status = "awaiting_deposit"

        db.session.add(project)
        db.session.commit()
        return jsonify(serialize_project(project)), 201

    @app.get("/projects/<int:project_id>")
    @login_required
    def get_project(project_id: int):
        project = Project.query.get_or_404(project_id)
        payload = serialize_project(project)
        db.session.commit()
        return jsonify(payload)

    @app.patch("/projects/<int:project_id>")
    @login_required
    def update_project(project_id: int):
        project = Project.query.get_or_404(project_id)
        problem = _apply_project_fields(project, _request_data())
        if problem:
            db.session.rollback()
            return _error(problem)
        payload = serialize_project(project)
        db.session.commit()
        return jsonify(payload)

    @app.delete("/projects/<int:project_id>")
    @login_required
    def delete_project(project_id: int):
        project = Project.query.get_or_404(project_id)
        Deposit.query.filter_by(project_id=project.id).update({"project_id": None})
        db.session.delete(project)
        db.session.commit()
        return jsonify({"deleted": True})

    @app.post("/projects/<int:project_id>/sla/pause")
    @login_required
    def pause_project_sla(project_id: int):
        project = Project.query.get_or_404(project_id)
        if project.sla_paused_at is not None:
            return _error("The SLA clock is already paused.")
        project.sla_paused_at = utcnow()
        payload = serialize_project(project)
        db.session.commit()
        return jsonify(payload)

    @app.post("/projects/<int:project_id>/sla/resume")
    @login_required
    def resume_project_sla(project_id: int):
        project = Project.query.get_or_404(project_id)
        paused_at = ensure_aware(project.sla_paused_at)
        if paused_at is None:
            return _error("The SLA clock is not paused.")

        paused_days = max(0, (utcnow() - paused_at).days)
        project.sla_resume_offset_days = (project.sla_resume_offset_days or 0) + paused_days
        if project.sla_due_date is not None and paused_days:
            project.sla_due_date = ensure_aware(project.sla_due_date) + timedelta(
                days=paused_days
            )
        project.sla_paused_at = None
        payload = serialize_project(project)
        db.session.commit()
        return jsonify(payload)

    @app.post("/projects/<int:project_id>/tasks")
    @login_required
    def create_task(project_id: int):
        project = Project.query.get_or_404(project_id)
        payload = _request_data()
        title = _clean_text(payload, "title")
        if not title:
            return _error("Task title is required.")
        status = _clean_text(payload, "status") or "todo"
        if status not in TASK_STATUS_OPTIONS:
            return _error("Choose a valid task status.")
        due_date = parse_datetime_value(payload.get("due_date"))

        task = Task(
            project_id=project.id,
            title=title,
            status=status,
            due_date=due_date.date() if due_date else None,
        )
        db.session.add(task)
        db.session.commit()
        return jsonify(serialize_task(task)), 201

    @app.patch("/tasks/<int:task_id>")
    @login_required
    def update_task(task_id: int):
        task = Task.query.get_or_404(task_id)
        payload = _request_data()
        if "title" in payload:
            title = _clean_text(payload, "title")
            if not title:
                return _error("Task title is required.")
            task.title = title
        if "status" in payload:
            status = _clean_text(payload, "status")
            if status not in TASK_STATUS_OPTIONS:
                return _error("Choose a valid task status.")
            task.status = status
        if "due_date" in payload:
            due_date = parse_datetime_value(payload.get("due_date"))
            task.due_date = due_date.date() if due_date else None
        db.session.commit()
        return jsonify(serialize_task(task))

    @app.delete("/tasks/<int:task_id>")
    @login_required
    def delete_task(task_id: int):
        task = Task.query.get_or_404(task_id)
        db.session.delete(task)
        db.session.commit()
        return jsonify({"deleted": True})

    @app.post("/projects/<int:project_id>/milestones")
    @login_required
    def create_milestone(project_id: int):
        project = Project.query.get_or_404(project_id)
        payload = _request_data()
        name = _clean_text(payload, "name")
        amount_cents = _coerce_int(payload.get("amount_cents"))
        if not name:
            return _error("Milestone name is required.")
        if amount_cents is None or amount_cents < 0:
            return _error("Milestone amount must be a non-negative number of cents.")

        order_index = _coerce_int(payload.get("order_index"))
        if order_index is None:
            order_index = len(project.milestones)
        milestone = Milestone(
            project_id=project.id,
            name=name,
            amount_cents=amount_cents,
            order_index=order_index,
        )
        db.session.add(milestone)
        db.session.commit()
        return jsonify(serialize_milestone(milestone)), 201

    @app.post("/milestones/<int:milestone_id>/invoice")
    @login_required
    def invoice_milestone(milestone_id: int):
        milestone = Milestone.query.get_or_404(milestone_id)
        if not stripe_active():
            return _stripe_unavailable()
        if milestone.status != "pending":
            return _error("This milestone has already been invoiced.")
        if milestone.amount_cents <= 0:
            return _error("Milestone amount must be greater than zero to invoice.")

        project = milestone.project
        try:
            invoice = create_client_invoice(
                project.client,
                [
                    {
                        "description": f"{project.title}: {milestone.name}",
                        "amount_cents": milestone.amount_cents,
                    }
                ],
                metadata={"milestone_id": str(milestone.id), "project_id": str(project.id)},
            )
        except ValueError as exc:
            db.session.rollback()
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            app.logger.warning("Milestone invoice failed: %s", exc)
            return _error(describe_stripe_error(exc))

        milestone.status = "invoiced"
        milestone.stripe_invoice_id = invoice.stripe_invoice_id
        db.session.commit()
        return jsonify({"milestone": serialize_milestone(milestone), "invoice": serialize_invoice(invoice)})

    @app.post("/clients/<int:client_id>/billing/customer")
    @login_required
    def create_billing_customer(client_id: int):
        client = Client.query.get_or_404(client_id)
        if not stripe_active():
            return _stripe_unavailable()
        try:
            customer_id = ensure_stripe_customer(client)
        except ValueError as exc:
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify({"stripe_customer_id": customer_id})

    @app.post("/clients/<int:client_id>/billing/subscriptions")
    @login_required
    def create_subscription(client_id: int):
        client = Client.query.get_or_404(client_id)
        if not stripe_active():
            return _stripe_unavailable()
        price_id = _clean_text(_request_data(), "price_id")
        if not price_id:
            return _error("A Stripe price id is required.")

        try:
            result = create_client_subscription(client, price_id)
        except ValueError as exc:
            db.session.rollback()
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            app.logger.warning("Stripe subscription creation failed: %s", exc)
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify(result), 201

    @app.post("/clients/<int:client_id>/billing/invoices")
    @login_required
    def create_invoice(client_id: int):
        client = Client.query.get_or_404(client_id)
        if not stripe_active():
            return _stripe_unavailable()
        payload = _request_data()
        line_items, problem = _parse_line_items(payload.get("line_items"))
        if problem:
            return _error(problem)
        due_date = parse_datetime_value(payload.get("due_date"))
        if payload.get("due_date") and due_date is None:
            return _error("Due date must be an ISO 8601 date.")

        try:
            invoice = create_client_invoice(client, line_items, due_date)
        except ValueError as exc:
            db.session.rollback()
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            app.logger.warning("Stripe invoice creation failed: %s", exc)
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify(serialize_invoice(invoice)), 201

    @app.post("/clients/<int:client_id>/billing/portal-session")
    @login_required
    def create_admin_portal_session(client_id: int):
        client = Client.query.get_or_404(client_id)
        return _billing_portal_response(client)

    def _billing_portal_response(client: Client):
        if not stripe_active():
            return _stripe_unavailable()
        return_url = app.config.get("STRIPE_CUSTOMER_PORTAL_RETURN_URL")
        if not return_url:
            return _error("Customer portal return URL is not configured.", 500)
        try:
            url = create_billing_portal_url(client, return_url)
        except ValueError as exc:
            db.session.rollback()
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify({"url": url})

    @app.post("/invoices/<int:invoice_id>/discount")
    @login_required
    def discount_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        if not stripe_active():
            return _stripe_unavailable()
        payload = _request_data()
        discount_type = _clean_text(payload, "discount_type")
        discount_value = _coerce_int(payload.get("discount_value"))
        if discount_value is None:
            return _error("Discount value is required.")

        applied_by = None
        admin_id = session.get("admin_user_id")
        if admin_id:
            admin = db.session.get(AdminUser, admin_id)
            applied_by = admin.username if admin else None

        try:
            discount = apply_invoice_discount(invoice, discount_type, discount_value, applied_by)
        except ValueError as exc:
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            app.logger.warning("Invoice discount failed: %s", exc)
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify(
            {
                "coupon_id": discount.stripe_coupon_id,
                "invoice": serialize_invoice(invoice),
            }
        )

    @app.post("/invoices/<int:invoice_id>/reminders")
    @login_required
    def toggle_invoice_reminders(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        invoice.disable_reminders = is_truthy(_request_data().get("disabled"))
        db.session.commit()
        return jsonify(serialize_invoice(invoice))

    @app.get("/billing/products")
    @login_required
    def list_billing_products():
        products = BillingProduct.query.order_by(BillingProduct.name).all()
        return jsonify([serialize_billing_product(product) for product in products])

    @app.post("/billing/products")
    @login_required
    def create_billing_product_route():
        if not stripe_active():
            return _stripe_unavailable()
        payload = _request_data()
        name = _clean_text(payload, "name")
        billing_type = _clean_text(payload, "billing_type")
        if not name or not billing_type:
            return _error("Product name and billing type are required.")

        bundled_with = _coerce_int(payload.get("bundled_with_product_id"))
        if bundled_with is not None and db.session.get(BillingProduct, bundled_with) is None:
            return _error("The bundled product does not exist.")

        try:
            product = create_billing_product(
                name,
                billing_type,
                description=_clean_text(payload, "description") or None,
                amount_cents=_coerce_int(payload.get("amount_cents")),
                monthly_price_cents=_coerce_int(payload.get("monthly_price_cents")),
                bundled_with_product_id=bundled_with,
            )
        except ValueError as exc:
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify(serialize_billing_product(product)), 201

    @app.get("/addons")
    @login_required
    def list_addons():
        addons = AddonCatalogItem.query.order_by(
            AddonCatalogItem.sort_order, AddonCatalogItem.name
        ).all()
        return jsonify([serialize_addon(addon) for addon in addons])

    @app.post("/addons")
    @login_required
    def create_addon():
        payload = _request_data()
        if not _clean_text(payload, "name"):
            return _error("Add-on name is required.")

        addon = AddonCatalogItem(billing_type="subscription", sort_order=0, is_active=True)
        error = _apply_addon_fields(addon, payload)
        if error:
            return _error(error)
        db.session.add(addon)
        db.session.commit()
        return jsonify(serialize_addon(addon)), 201

    @app.patch("/addons/<int:addon_id>")
    @login_required
    def update_addon(addon_id: int):
        addon = AddonCatalogItem.query.get_or_404(addon_id)
        error = _apply_addon_fields(addon, _request_data())
        if error:
            db.session.rollback()
            return _error(error)
        db.session.commit()
        return jsonify(serialize_addon(addon))

    @app.delete("/addons/<int:addon_id>")
    @login_required
    def delete_addon(addon_id: int):
        addon = AddonCatalogItem.query.get_or_404(addon_id)
        db.session.delete(addon)
        db.session.commit()
        return jsonify({"deleted": True})

    @app.get("/addons/requests")
    @login_required
    def list_addon_requests():
        query = ClientAddonRequest.query
        status = request.args.get("status")
        if status:
            query = query.filter_by(status=status)
        addon_requests = query.order_by(ClientAddonRequest.requested_at.desc()).all()
        return jsonify([serialize_addon_request(item) for item in addon_requests])

    @app.patch("/addons/requests/<int:request_id>")
    @login_required
    def resolve_addon_request(request_id: int):
        addon_request = ClientAddonRequest.query.get_or_404(request_id)
        status = _clean_text(_request_data(), "status")
        if status not in ADDON_REQUEST_STATUSES:
            return _error("Choose a valid request status.")
        addon_request.status = status
        addon_request.resolved_at = None if status == "requested" else utcnow()
        db.session.commit()
        return jsonify(serialize_addon_request(addon_request))

    @app.get("/billing/metrics")
    @login_required
    def billing_metrics():
        return jsonify(calculate_revenue_metrics())

    @app.post("/billing/automation/run")
    @login_required
    def billing_automation():
        return jsonify({"actions": run_billing_automation()})

    @app.post("/billing/reminders/run")
    @login_required
    def invoice_reminders():
        return jsonify({"reminders_sent": send_invoice_reminders()})

    @app.post("/projects/<int:project_id>/deposit-checkout")
    def deposit_checkout(project_id: int):
        project = Project.query.get_or_404(project_id)
        if not session.get(ADMIN_SESSION_KEY):
            portal_client_id = session.get(PORTAL_SESSION_KEY)
            if not portal_client_id:
                return _error("Login required.", 401)
            if portal_client_id != project.client_id:
                abort(403)

        if not stripe_active():
            return _stripe_unavailable()
        if project.deposit_paid:
            return _error("The deposit for this project has already been paid.")

        payload = _request_data()
        success_url = _clean_text(payload, "success_url")
        cancel_url = _clean_text(payload, "cancel_url")
        if not success_url or not cancel_url:
            return _error("Success and cancel URLs are required.")
        amount_cents = _coerce_int(payload.get("amount_cents")) or project.required_deposit_cents
        if not amount_cents or amount_cents <= 0:
            return _error("A positive deposit amount is required.")

        try:
            deposit, checkout_url = create_deposit_checkout(
                project,
                success_url,
                cancel_url,
                amount_cents,
                _clean_text(payload, "description") or None,
            )
        except ValueError as exc:
            db.session.rollback()
            return _error(str(exc))
        except StripeError as exc:
            db.session.rollback()
            app.logger.warning("Deposit checkout failed: %s", exc)
            return _error(describe_stripe_error(exc))
        db.session.commit()
        return jsonify({"checkout_url": checkout_url, "deposit_id": deposit.id}), 201

    @app.get("/portal")
    @client_login_required
    def portal_dashboard(client: Client):
        projects = [serialize_project(project) for project in client.projects]
        db.session.commit()
        return jsonify(
            {
                "client": serialize_client(client, include_billing=False),
                "access": evaluate_client_access(client),
                "projects": projects,
                "subscriptions": [
                    serialize_subscription(subscription)
                    for subscription in client.subscriptions
                ],
            }
        )

    @app.get("/portal/projects/<int:project_id>")
    @client_login_required
    def portal_project(client: Client, project_id: int):
        project = Project.query.get_or_404(project_id)
        _owned_by(client, project.client_id)
        payload = serialize_project(project)
        db.session.commit()
        return jsonify(payload)

    @app.get("/portal/invoices")
    @client_login_required
    def portal_invoices(client: Client):
        invoices = (
            Invoice.query.filter_by(client_id=client.id)
            .order_by(Invoice.created_at.desc())
            .all()
        )
        return jsonify([serialize_invoice(invoice) for invoice in invoices])

    @app.get("/portal/addons")
    @client_login_required
    def portal_addons(client: Client):
        addons = (
            AddonCatalogItem.query.filter_by(is_active=True)
            .order_by(AddonCatalogItem.sort_order, AddonCatalogItem.name)
            .all()
        )
        addon_requests = (
            ClientAddonRequest.query.filter_by(client_id=client.id)
            .order_by(ClientAddonRequest.requested_at.desc())
            .all()
        )
        return jsonify(
            {
                "addons": [serialize_addon(addon) for addon in addons],
                "requests": [serialize_addon_request(item) for item in addon_requests],
            }
        )

    @app.post("/portal/addons/<addon_key>/request")
    @client_login_required
    def portal_request_addon(client: Client, addon_key: str):
        addon = AddonCatalogItem.query.filter_by(key=addon_key, is_active=True).first_or_404()
        pending = ClientAddonRequest.query.filter_by(
            client_id=client.id, addon_key=addon.key, status="requested"
        ).first()
        if pending:
            return _error("You already have a pending request for this add-on.")

        addon_request = ClientAddonRequest(
            client_id=client.id,
            addon_key=addon.key,
            addon_name=addon.name,
            notes=_clean_text(_request_data(), "notes") or None,
        )
        db.session.add(addon_request)
        db.session.commit()

        subject, body = build_addon_request_notification(client, addon_request)
        recipient = app.config.get("ADMIN_EMAIL") or app.config.get("CONTACT_EMAIL")
        if not dispatch_email(recipient, subject, body):
            app.logger.warning(
                "Add-on request %s notification was not delivered", addon_request.id
            )
        return jsonify(serialize_addon_request(addon_request)), 201

    @app.post("/portal/subscriptions/<int:subscription_id>/cancel")
    @client_login_required
    def portal_cancel_subscription(client: Client, subscription_id: int):
        subscription = Subscription.query.get_or_404(subscription_id)
        _owned_by(client, subscription.client_id)
        if not stripe_active():
            return _stripe_unavailable()

        try:
            updated = stripe.Subscription.modify(
                subscription.stripe_subscription_id, cancel_at_period_end=True
            )
        except StripeError as exc:
            app.logger.warning("Subscription cancellation failed: %s", exc)
            return _error(describe_stripe_error(exc))

        subscription.cancel_at_period_end = True
        period_end = from_unix_timestamp(_stripe_field(updated, "current_period_end"))
        if period_end is not None:
            subscription.current_period_end = period_end
        client.service_status = "paused"
        client.cancellation_reason = "client_requested"
        client.cancellation_effective_date = subscription.current_period_end
        db.session.commit()
        app.logger.info(
            "Client %s scheduled cancellation of %s",
            client.id,
            subscription.stripe_subscription_id,
        )
        return jsonify(serialize_subscription(subscription))

    @app.post("/portal/billing/portal-session")
    @client_login_required
    def portal_billing_session(client: Client):
        return _billing_portal_response(client)

    @app.post("/stripe/webhook")
    def stripe_webhook():
        if not stripe_active():
            return _stripe_unavailable()

        payload = request.get_data()
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            json_payload = json.loads(payload.decode("utf-8"))
            if not isinstance(json_payload, dict):
                return _error("Invalid webhook payload.")
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            else:
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
        except (ValueError, SignatureVerificationError, StripeError) as error:
            app.logger.warning("Rejected Stripe webhook payload: %s", error)
            return _error(str(error) or "Invalid webhook payload.")

        event_id = _stripe_field(event, "id")
        event_type = _stripe_field(event, "type", "")
        if not event_id:
            return _error("Webhook event is missing an id.")

        if PaymentEvent.query.filter_by(stripe_event_id=event_id).first():
            app.logger.info("Duplicate Stripe event %s ignored", event_id)
            return jsonify({"received": True, "duplicate": True})

        data_object = _stripe_field(_stripe_field(event, "data"), "object")
        client = _resolve_event_client(data_object) if data_object else None
        record_payment_event(event_id, event_type, client, json_payload)

        handled = handle_stripe_event(event, client)
        db.session.commit()
        app.logger.info(
            "Stripe webhook %s %s handled=%s", event_type, event_id, handled
        )
        return jsonify({"received": True, "handled": handled})

    @app.post("/analysis/report-checkout")
    def analysis_report_checkout():
        if not stripe_active():
            return _stripe_unavailable()
        payload = _request_data()
        business_name = _clean_text(payload, "business_name", "businessName")
        location = _clean_text(payload, "location")
        origin = _clean_text(payload, "origin")
        if not business_name or not location:
            return _error("Business name and location are required.")
        if not origin.startswith("http"):
            return _error("A valid origin URL is required.")
        lite_score = payload.get("lite_score", payload.get("liteScore"))
        competitor_radius = payload.get("competitor_radius", payload.get("competitorRadius"))
        for raw_number in (lite_score, competitor_radius):
            if raw_number not in (None, "") and _coerce_float(raw_number) is None:
                return _error("Lite score and competitor radius must be numbers.")

        try:
            checkout = create_report_checkout(
                business_name, location, lite_score, competitor_radius, origin
            )
        except StripeError as exc:
            app.logger.warning("Report checkout failed: %s", exc)
            return _error(describe_stripe_error(exc))
        return jsonify(
            {"url": _stripe_field(checkout, "url"), "session_id": _stripe_field(checkout, "id")}
        )

    @app.get("/analysis/report-checkout/<session_id>")
    def analysis_report_session(session_id: str):
        if not stripe_active():
            return _stripe_unavailable()
        try:
            checkout = stripe.checkout.Session.retrieve(session_id)
        except StripeError as exc:
            return _error(describe_stripe_error(exc), 404)
        customer_details = _stripe_field(checkout, "customer_details")
        return jsonify(
            {
                "payment_status": _stripe_field(checkout, "payment_status"),
                "customer_email": _stripe_field(customer_details, "email"),
                "metadata": _metadata_dict(checkout),
            }
        )

    @app.get("/dashboard")
    @login_required
    def dashboard():
        return jsonify(get_dashboard_overview_snapshot(app))

    @app.post("/sms")
    @login_required
    def send_sms():
        payload = _request_data()
        raw_to = _clean_text(payload, "to")
        body = _clean_text(payload, "body")
        if not raw_to or not body:
            return _error("Both 'to' and 'body' are required.")
        to_number = normalize_phone_number(raw_to)
        if to_number is None:
            return _error("Enter a valid phone number.")

        client = None
        client_id = _coerce_int(payload.get("client_id"))
        if client_id is not None:
            client = Client.query.get_or_404(client_id)

        return _deliver_sms(to_number, body, client)

    @app.post("/clients/<int:client_id>/sms")
    @login_required
    def send_client_sms(client_id: int):
        client = Client.query.get_or_404(client_id)
        body = _clean_text(_request_data(), "body")
        if not body:
            return _error("Message body is required.")
        if not client.sms_opt_in:
            return _error("This client has not opted in to SMS messages.")
        to_number = normalize_phone_number(client.phone)
        if to_number is None:
            return _error("This client does not have a valid phone number.")
        return _deliver_sms(to_number, body, client)

    def _deliver_sms(to_number: str, body: str, client: Client | None):
        if not twilio_ready(app):
            return _error("Twilio is not configured.", 500)
        try:
            message = send_sms_message(app, to_number, body, client)
        except TwilioApiError as exc:
            return _error(str(exc), 502)
        return jsonify(serialize_sms_message(message)), 201

    @app.get("/sms")
    @login_required
    def list_sms():
        limit = max(1, min(200, _coerce_int(request.args.get("limit")) or 50))
        messages = SmsMessage.query.order_by(SmsMessage.id.desc()).limit(limit).all()
        return jsonify([serialize_sms_message(message) for message in messages])

    @app.get("/settings/twilio")
    @login_required
    def get_twilio_configuration():
        settings = get_twilio_settings(app)
        return jsonify(
            {
                "account_sid": settings["account_sid"],
                "auth_token": _mask_secret(settings["auth_token"]),
                "phone_number": settings["phone_number"],
                "configured": twilio_ready(app),
            }
        )

    @app.post("/settings/twilio")
    @login_required
    def configure_twilio():
        payload = _request_data()
        account_sid = _clean_text(payload, "account_sid")
        auth_token = _clean_text(payload, "auth_token")
        phone_number = normalize_phone_number(_clean_text(payload, "phone_number"))
        if not account_sid or not auth_token or not phone_number:
            return _error("Account SID, auth token, and a valid phone number are required.")

        config = TwilioConfig.query.first()
        if config is None:
            config = TwilioConfig()
            db.session.add(config)
        config.account_sid = account_sid
        config.auth_token = auth_token
        config.phone_number = phone_number
        db.session.commit()

        apply_twilio_config_from_database(app)
        return jsonify({"configured": True, "phone_number": phone_number})

    @app.post("/settings/twilio/test")
    @login_required
    def test_twilio_connection():
        try:
            account = build_twilio_client(app).fetch_account()
        except TwilioApiError as exc:
            return _error(str(exc), 502)
        return jsonify(
            {
                "ok": True,
                "friendly_name": account.get("friendly_name"),
                "status": account.get("status"),
            }
        )

    @app.get("/settings/stripe")
    @login_required
    def get_stripe_configuration():
        return jsonify(
            {
                "publishable_key": app.config.get("STRIPE_PUBLISHABLE_KEY"),
                "secret_key": _mask_secret(app.config.get("STRIPE_SECRET_KEY")),
                "webhook_secret": _mask_secret(app.config.get("STRIPE_WEBHOOK_SECRET")),
                "portal_return_url": app.config.get("STRIPE_CUSTOMER_PORTAL_RETURN_URL"),
                "configured": stripe_active(app),
            }
        )

    @app.post("/settings/stripe")
    @login_required
    def configure_stripe_settings():
        payload = _request_data()
        config = StripeConfig.query.first()
        if config is None:
            config = StripeConfig()
            db.session.add(config)

        config.secret_key = _clean_setting(payload.get("secret_key"))
        config.publishable_key = _clean_setting(payload.get("publishable_key"))
        config.webhook_secret = _clean_setting(payload.get("webhook_secret"))
        config.portal_return_url = _clean_setting(payload.get("portal_return_url"))
        db.session.commit()

        apply_stripe_config_from_database(app)
        return jsonify({"configured": stripe_active(app)})

    @app.get("/settings/smtp")
    @login_required
    def get_smtp_configuration():
        settings = get_effective_smtp_settings(app)
        config = ensure_notification_configuration()
        return jsonify(
            {
                "host": settings["host"],
                "port": settings["port"],
                "use_tls": settings["use_tls"],
                "username": settings["username"],
                "password": _mask_secret(settings["password"]),
                "from_email": settings["from_email"],
                "from_name": settings["from_name"],
                "reply_to_email": settings["reply_to_email"],
                "notify_billing_activity": config.notify_billing_activity,
            }
        )

    @app.post("/settings/smtp")
    @login_required
    def configure_smtp():
        payload = _request_data()
        config = ensure_notification_configuration()

        from_email = _clean_setting(payload.get("from_email"))
        if from_email and not is_valid_email(from_email):
            return _error("Provide a valid sender email address.")
        port = _coerce_int(payload.get("smtp_port"))
        if payload.get("smtp_port") not in (None, "") and (port is None or port <= 0):
            return _error("SMTP port must be a positive number.")

        config.smtp_host = _clean_setting(payload.get("smtp_host"))
        config.smtp_port = port or 587
        config.use_tls = is_truthy(payload.get("use_tls", True))
        config.smtp_username = _clean_setting(payload.get("smtp_username"))
        if payload.get("smtp_password"):
            config.smtp_password = str(payload["smtp_password"])
        config.from_email = from_email
        config.from_name = _clean_setting(payload.get("from_name"))
        config.reply_to_email = _clean_setting(payload.get("reply_to_email"))
        if "notify_billing_activity" in payload:
            config.notify_billing_activity = is_truthy(payload.get("notify_billing_activity"))
        db.session.commit()
        return jsonify({"configured": config.smtp_ready()})

    @app.post("/contact")
    def contact():
        payload = _request_data()
        full_name = _clean_text(payload, "fullName", "full_name")
        email = _clean_text(payload, "email")
        message = _clean_text(payload, "message")
        if not full_name or not message:
            return _error("Name and message are required.")
        if not is_valid_email(email):
            return _error("A valid email address is required.")

        submission = ContactSubmission(
            full_name=full_name,
            email=email,
            phone=_clean_text(payload, "phone") or None,
            message=message,
            form_type=_clean_text(payload, "formType", "form_type") or "Quick Inquiry",
        )
        db.session.add(submission)
        db.session.flush()

        subject, body = build_contact_notification(submission)
        submission.notified = dispatch_email(app.config.get("CONTACT_EMAIL"), subject, body)
        if not submission.notified:
            app.logger.warning(
                "Contact form notification for submission %s was not delivered",
                submission.id,
            )
        db.session.commit()
        return jsonify({"success": True, "id": submission.id, "notified": submission.notified})

    def _store_analysis_lead(
        payload: dict, website_url: str, tool: str, result: dict[str, object]
    ) -> WebsiteAnalysis:
        contact_email = _clean_text(payload, "email").lower() or None
        if contact_email and not is_valid_email(contact_email):
            contact_email = None
        lead = WebsiteAnalysis(
            website_url=website_url,
            business_name=_clean_text(payload, "businessName", "business_name") or None,
            industry=_clean_text(payload, "industry") or None,
            contact_email=contact_email,
            tool=tool,
            overall_score=result["overall_score"],
            grade=result["grade"],
            result=result,
        )
        db.session.add(lead)
        db.session.commit()
        return lead

    @app.post("/analysis")
    def analyze_website():
        payload = _request_data()
        website_url = normalize_website_url(_clean_text(payload, "websiteUrl", "website_url"))
        if website_url is None:
            return _error("A valid website URL is required.")

        try:
            result = run_local_analysis(app, website_url, _clean_text(payload, "industry"))
        except ScanError as exc:
            app.logger.warning("Scan of %s failed: %s", website_url, exc)
            return _error(str(exc), 502)

        lead = _store_analysis_lead(payload, website_url, "local", result)
        return jsonify({**result, "lead_id": lead.id})

    @app.post("/analysis/visual")
    def analyze_website_visual():
        payload = _request_data()
        website_url = normalize_website_url(_clean_text(payload, "websiteUrl", "website_url"))
        if website_url is None:
            return _error("A valid website URL is required.")

        try:
            html = fetch_website_html(
                website_url, timeout=float(app.config.get("ANALYZER_FETCH_TIMEOUT", 15.0))
            )
        except ScanError as exc:
            app.logger.warning("Visual scan of %s failed: %s", website_url, exc)
            return _error(str(exc), 502)

        result = analyze_visual(html, website_url)
        lead = _store_analysis_lead(payload, website_url, "visual", result)
        return jsonify({**result, "lead_id": lead.id})


def register_commands(app: Flask) -> None:
    @app.cli.command("run-billing-automation")
    def run_billing_automation_command():
        """Escalate overdue clients and reset those who are paid up."""

        actions = run_billing_automation()
        for action in actions:
            click.echo(f"client {action['client_id']}: {action['action']}")
        click.echo(f"{len(actions)} billing action(s) taken.")

    @app.cli.command("send-invoice-reminders")
    def send_invoice_reminders_command():
        """Email upcoming and overdue invoice reminders."""

        reminders = send_invoice_reminders()
        for line in reminders:
            click.echo(line)
        click.echo(f"{len(reminders)} reminder(s) sent.")


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=is_truthy(os.environ.get("FLASK_DEBUG")))
