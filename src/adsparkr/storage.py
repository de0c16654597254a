from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any

from adsparkr.config import settings

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_filename(name: str) -> str:
    # Prevent path traversal in storage object keys.
    return os.path.basename(name or "file").replace("..", "_")


def json_field(value: Any) -> dict[str, Any]:
    """JSON columns written by older clients may hold a serialized string."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


def _first(rows: list[dict[str, Any]] | None) -> dict[str, Any] | None:
    return rows[0] if rows else None


class StoreError(RuntimeError):
    pass


class SupabaseStore:
    """
    Data access for the Supabase tables and storage buckets the API uses.

    Tables: projects, user_profiles, subscriptions, subscription_usage,
    published_ads, invoices. Every method returns plain row dicts.
    """

    def __init__(self, url: str | None = None, key: str | None = None) -> None:
        url = url or settings.supabase_url
        key = key or settings.supabase_service_role_key
        if not (url and key):
            raise StoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        from supabase import create_client  # type: ignore

        self.url = url.rstrip("/")
        self.client = create_client(url, key)

    # Projects

    def create_project(self, user_id: str, website_url: str) -> dict[str, Any]:
        row = {
            "user_id": user_id,
            "url_analysis": {"website_url": website_url},
            "status": "PENDING",
            "ad_set_proposals": [],
        }
        data = self.client.table("projects").insert(row).execute().data
        created = _first(data)
        if created is None:
            raise StoreError("Project insert returned no row")
        return created

    def list_projects(self, user_id: str) -> list[dict[str, Any]]:
        return (
            self.client.table("projects")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
            .data
            or []
        )

    def get_project(self, project_id: str, user_id: str | None = None) -> dict[str, Any] | None:
        query = self.client.table("projects").select("*").eq("project_id", project_id)
        if user_id is not None:
            query = query.eq("user_id", user_id)
        return _first(query.limit(1).execute().data)

    def update_project(self, project_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        data = self.client.table("projects").update(updates).eq("project_id", project_id).execute().data
        return _first(data)

    # Profiles

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return _first(self.client.table("user_profiles").select("*").eq("user_id", user_id).limit(1).execute().data)

    def upsert_profile(self, user_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        row = {"user_id": user_id, **updates, "updated_at": _now_iso()}
        data = self.client.table("user_profiles").upsert(row, on_conflict="user_id").execute().data
        return _first(data) or row

    # Subscriptions

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        return _first(
            self.client.table("subscriptions").select("*").eq("id", subscription_id).limit(1).execute().data
        )

    def latest_active_subscription(self, user_id: str) -> dict[str, Any] | None:
        return _first(
            self.client.table("subscriptions")
            .select("*")
            .eq("user_id", user_id)
            .eq("status", "active")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
            .data
        )

    def latest_trial_or_active_subscription(self, user_id: str) -> dict[str, Any] | None:
        return _first(
            self.client.table("subscriptions")
            .select("*")
            .eq("user_id", user_id)
            .or_("plan_type.eq.free_trial,is_trial.eq.true,status.eq.active")
            .in_("status", ["active", "trial_expired", "trialing"])
            .order("created_at", desc=True)
            .limit(1)
            .execute()
            .data
        )

    def find_subscription(
        self,
        user_id: str,
        plan_type: str | None = None,
        statuses: list[str] | None = None,
    ) -> dict[str, Any] | None:
        query = self.client.table("subscriptions").select("*").eq("user_id", user_id)
        if plan_type is not None:
            query = query.eq("plan_type", plan_type)
        if statuses:
            query = query.in_("status", statuses)
        return _first(query.order("created_at", desc=True).limit(1).execute().data)

    def find_subscription_by_provider_id(self, provider_subscription_id: str) -> dict[str, Any] | None:
        return _first(
            self.client.table("subscriptions")
            .select("*")
            .eq("payment_provider_subscription_id", provider_subscription_id)
            .limit(1)
            .execute()
            .data
        )

    def insert_subscription(self, row: dict[str, Any]) -> dict[str, Any]:
        created = _first(self.client.table("subscriptions").insert(row).execute().data)
        if created is None:
            raise StoreError("Subscription insert returned no row")
        return created

    def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        updates = {**updates, "updated_at": _now_iso()}
        return _first(self.client.table("subscriptions").update(updates).eq("id", subscription_id).execute().data)

    def cancel_subscriptions(self, user_id: str, statuses: list[str]) -> int:
        data = (
            self.client.table("subscriptions")
            .update({"status": "cancelled", "cancelled_at": _now_iso(), "updated_at": _now_iso()})
            .eq("user_id", user_id)
            .in_("status", statuses)
            .execute()
            .data
        )
        return len(data or [])

    # Usage

    def get_usage(self, user_id: str, subscription_id: str) -> dict[str, Any] | None:
        return _first(
            self.client.table("subscription_usage")
            .select("*")
            .eq("user_id", user_id)
            .eq("subscription_id", subscription_id)
            .limit(1)
            .execute()
            .data
        )

    def insert_usage(self, row: dict[str, Any]) -> dict[str, Any]:
        return _first(self.client.table("subscription_usage").insert(row).execute().data) or row

    def update_usage(self, usage_id: str, updates: dict[str, Any]) -> dict[str, Any] | None:
        updates = {**updates, "updated_at": _now_iso()}
        return _first(self.client.table("subscription_usage").update(updates).eq("id", usage_id).execute().data)

    # Published ads

    def insert_published_ads(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        return self.client.table("published_ads").insert(rows).execute().data or []

    def count_published_ads_since(self, user_id: str, since_iso: str) -> int:
        resp = (
            self.client.table("published_ads")
            .select("*", count="exact", head=True)
            .eq("user_id", user_id)
            .gte("created_at", since_iso)
            .execute()
        )
        return int(resp.count or 0)

    # Invoices

    def list_paid_invoices(self, user_id: str) -> list[dict[str, Any]]:
        return (
            self.client.table("invoices")
            .select("*")
            .eq("user_id", user_id)
            .eq("status", "paid")
            .order("paid_at", desc=True)
            .execute()
            .data
            or []
        )

    def insert_invoice(self, row: dict[str, Any]) -> dict[str, Any]:
        return _first(self.client.table("invoices").insert(row).execute().data) or row

    # Storage

    def upload_file(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        self.client.storage.from_(bucket).upload(
            path,
            content,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        return self.public_url(bucket, path)

    def public_url(self, bucket: str, path: str) -> str:
        url = self.client.storage.from_(bucket).get_public_url(path)
        # Older clients return a dict.
        if isinstance(url, dict):
            url = url.get("publicUrl") or url.get("url")
        return url or f"{self.url}/storage/v1/object/public/{bucket}/{path}"

    def remove_file(self, bucket: str, path: str) -> None:
        self.client.storage.from_(bucket).remove([path])

    # Auth

    def get_user(self, access_token: str) -> dict[str, Any] | None:
        try:
            resp = self.client.auth.get_user(access_token)
        except Exception as exc:  # gotrue raises its own AuthApiError family
            logger.info("token rejected by auth: %s", exc)
            return None
        user = getattr(resp, "user", None)
        if user is None:
            return None
        return {"id": user.id, "email": getattr(user, "email", None)}

    def sign_in(self, email: str, password: str) -> dict[str, Any]:
        try:
            resp = self.client.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as exc:  # AuthApiError for bad credentials
            raise StoreError(f"Sign-in failed: {exc}") from exc
        return _session_dict(resp)

    def exchange_code(self, code: str) -> dict[str, Any]:
        try:
            resp = self.client.auth.exchange_code_for_session({"auth_code": code})
        except Exception as exc:
            raise StoreError(f"Code exchange failed: {exc}") from exc
        return _session_dict(resp)


def _session_dict(resp: Any) -> dict[str, Any]:
    session = getattr(resp, "session", None)
    user = getattr(resp, "user", None)
    if session is None or user is None:
        raise StoreError("No session returned")
    return {
        "access_token": session.access_token,
        "refresh_token": session.refresh_token,
        "expires_in": getattr(session, "expires_in", None),
        "user": {"id": user.id, "email": getattr(user, "email", None)},
    }


def storage_path(prefix: str, filename: str) -> str:
    """Unique object key under a project prefix."""
    name = _safe_filename(filename)
    ext = name.rsplit(".", 1)[-1] if "." in name else "bin"
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"{prefix}/{stamp}-{uuid.uuid4().hex[:10]}.{ext}"
