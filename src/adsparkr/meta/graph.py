from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from adsparkr.config import settings

logger = logging.getLogger(__name__)

PAYMENT_METHOD_SUBCODE = 1359188

AD_ACCOUNT_FIELDS = "id,account_id,name,account_status,currency,timezone_id,disable_reason"


class MetaGraphError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        code: int | None = None,
        error_subcode: int | None = None,
        error_user_title: str | None = None,
        error_user_msg: str | None = None,
        fbtrace_id: str | None = None,
        type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.error_subcode = error_subcode
        self.error_user_title = error_user_title
        self.error_user_msg = error_user_msg
        self.fbtrace_id = fbtrace_id
        self.type = type

    @classmethod
    def from_response(cls, resp: httpx.Response) -> MetaGraphError:
        try:
            err = resp.json().get("error") or {}
        except ValueError:
            err = {}
        return cls(
            message=err.get("message") or f"Meta API request failed ({resp.status_code})",
            status_code=resp.status_code,
            code=err.get("code"),
            error_subcode=err.get("error_subcode"),
            error_user_title=err.get("error_user_title"),
            error_user_msg=err.get("error_user_msg"),
            fbtrace_id=err.get("fbtrace_id"),
            type=err.get("type"),
        )

    @property
    def requires_payment_method(self) -> bool:
        return self.error_subcode == PAYMENT_METHOD_SUBCODE or self.error_user_title == "No payment method"

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "type": self.type,
            "code": self.code,
            "error_subcode": self.error_subcode,
            "error_user_title": self.error_user_title,
            "error_user_msg": self.error_user_msg,
            "fbtrace_id": self.fbtrace_id,
        }


def act_id(ad_account_id: str) -> str:
    return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"


def normalize_ad_account(acc: dict[str, Any]) -> dict[str, Any]:
    raw_id = str(acc.get("id") or "")
    return {
        "id": raw_id,
        "account_id": acc.get("account_id") or raw_id.replace("act_", ""),
        "name": acc.get("name"),
        "account_status": acc.get("account_status"),
        "currency": acc.get("currency"),
        "timezone_id": acc.get("timezone_id"),
        "disable_reason": acc.get("disable_reason"),
    }


def oauth_redirect_uri() -> str:
    return f"{settings.site_url.rstrip('/')}/api/meta-auth/callback"


class OAuthStateError(ValueError):
    pass


def _state_signature(body: str) -> str:
    if not settings.meta_app_secret:
        raise OAuthStateError("META_APP_SECRET is not set")
    return hmac.new(settings.meta_app_secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_state(state: dict[str, Any]) -> str:
    """OAuth state as base64url(JSON) plus an HMAC of it keyed on the app secret."""
    body = base64.urlsafe_b64encode(json.dumps(state, separators=(",", ":")).encode("utf-8")).decode("ascii")
    body = body.rstrip("=")
    return f"{body}.{_state_signature(body)}"


def verify_state(token: str) -> dict[str, Any]:
    body, _, sig = (token or "").partition(".")
    if not body or not sig or not hmac.compare_digest(sig, _state_signature(body)):
        raise OAuthStateError("OAuth state signature mismatch")
    try:
        data = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
    except ValueError as exc:
        raise OAuthStateError("Malformed OAuth state") from exc
    if not isinstance(data, dict):
        raise OAuthStateError("Malformed OAuth state")
    return data


def oauth_url(state: dict[str, Any], redirect_uri: str | None = None) -> str:
    params = {
        "client_id": settings.meta_app_id or "",
        "redirect_uri": redirect_uri or oauth_redirect_uri(),
        "state": sign_state(state),
        "scope": settings.meta_oauth_scopes,
        "response_type": "code",
    }
    return f"https://www.facebook.com/{settings.meta_graph_version}/dialog/oauth?{urlencode(params)}"


class MetaGraphClient:
    """
    Async wrapper over the Graph API for one user token.

    Every call raises MetaGraphError when Meta returns an error payload, with the
    code/subcode/fbtrace fields copied over so callers can report them.
    """

    def __init__(
        self,
        access_token: str | None = None,
        http: httpx.AsyncClient | None = None,
        version: str | None = None,
    ) -> None:
        self.access_token = access_token
        self.version = version or settings.meta_graph_version
        self.base_url = f"https://graph.facebook.com/{self.version}"
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

    async def __aenter__(self) -> MetaGraphClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _with_token(self, params: dict[str, Any] | None) -> dict[str, Any]:
        out = dict(params or {})
        if self.access_token and "access_token" not in out:
            out["access_token"] = self.access_token
        return out

    def _check(self, resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400 or not isinstance(data, dict) or "error" in data:
            err = MetaGraphError.from_response(resp)
            logger.error(
                "meta %s failed: status=%s code=%s subcode=%s fbtrace_id=%s msg=%s",
                what,
                resp.status_code,
                err.code,
                err.error_subcode,
                err.fbtrace_id,
                err.message,
            )
            raise err
        return data

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self.http.get(self._url(path), params=self._with_token(params))
        return self._check(resp, f"GET {path}")

    async def post(self, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self.http.post(self._url(path), params=self._with_token(None), json=payload or {})
        return self._check(resp, f"POST {path}")

    async def post_file(self, path: str, field: str, filename: str, content: bytes, content_type: str) -> dict[str, Any]:
        resp = await self.http.post(
            self._url(path),
            params=self._with_token(None),
            files={field: (filename, content, content_type)},
        )
        return self._check(resp, f"POST {path}")

    # OAuth

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> str:
        data = await self.get(
            "oauth/access_token",
            {
                "client_id": settings.meta_app_id,
                "client_secret": settings.meta_app_secret,
                "redirect_uri": redirect_uri or oauth_redirect_uri(),
                "code": code,
            },
        )
        token = data.get("access_token")
        if not token:
            raise MetaGraphError("No access token in Meta response")
        return token

    # Reads

    async def me(self) -> dict[str, Any]:
        return await self.get("me", {"fields": "id,name,email"})

    async def ad_accounts(self) -> list[dict[str, Any]]:
        data = await self.get("me/adaccounts", {"fields": AD_ACCOUNT_FIELDS})
        return [normalize_ad_account(a) for a in data.get("data", [])]

    async def pages(self) -> list[dict[str, Any]]:
        data = await self.get("me/accounts", {"fields": "id,name,category,tasks"})
        return [{k: v for k, v in p.items() if k != "access_token"} for p in data.get("data", [])]

    async def promote_pages(self, ad_account_id: str) -> list[dict[str, Any]]:
        data = await self.get(f"{act_id(ad_account_id)}/promote_pages", {"fields": "id,name"})
        return data.get("data", [])

    async def managed_pages(self) -> list[dict[str, Any]]:
        data = await self.get("me", {"fields": "accounts{id,name}"})
        return (data.get("accounts") or {}).get("data", [])

    async def pixels(self, ad_account_id: str) -> list[dict[str, Any]]:
        data = await self.get(f"{act_id(ad_account_id)}/adspixels", {"fields": "id,name,last_fired_time"})
        return data.get("data", [])

    async def account_currency(self, ad_account_id: str) -> str:
        data = await self.get(act_id(ad_account_id), {"fields": "currency"})
        return data.get("currency") or "USD"

    async def campaigns(self, ad_account_id: str, limit: int = 50) -> list[dict[str, Any]]:
        data = await self.get(
            f"{act_id(ad_account_id)}/campaigns",
            {
                "fields": "id,name,status,objective,daily_budget,lifetime_budget,created_time,start_time,stop_time",
                "limit": limit,
            },
        )
        return data.get("data", [])

    async def campaign_ads(self, campaign_id: str) -> list[dict[str, Any]]:
        data = await self.get(f"{campaign_id}/ads", {"fields": "id,name,status,adset_id,creative{id,thumbnail_url}"})
        return data.get("data", [])

    async def insights(self, object_id: str, date_preset: str = "last_30d") -> dict[str, Any] | None:
        data = await self.get(
            f"{object_id}/insights",
            {
                "fields": "impressions,clicks,spend,reach,ctr,cpc,cpm",
                "date_preset": date_preset,
            },
        )
        rows = data.get("data") or []
        return rows[0] if rows else None

    async def search_interests(self, query: str, limit: int = 10) -> list[dict[str, Any]]:
        data = await self.get("search", {"type": "adinterest", "q": query, "limit": limit})
        return data.get("data", [])

    # Writes

    async def create_campaign(self, ad_account_id: str, payload: dict[str, Any]) -> str:
        return (await self.post(f"{act_id(ad_account_id)}/campaigns", payload))["id"]

    async def create_adset(self, ad_account_id: str, payload: dict[str, Any]) -> str:
        return (await self.post(f"{act_id(ad_account_id)}/adsets", payload))["id"]

    async def create_creative(self, ad_account_id: str, payload: dict[str, Any]) -> str:
        return (await self.post(f"{act_id(ad_account_id)}/adcreatives", payload))["id"]

    async def create_ad(self, ad_account_id: str, payload: dict[str, Any]) -> str:
        return (await self.post(f"{act_id(ad_account_id)}/ads", payload))["id"]

    async def set_status(self, object_id: str, status: str) -> None:
        await self.post(object_id, {"status": status})

    async def upload_image_url(self, ad_account_id: str, image_url: str) -> str:
        data = await self.post(f"{act_id(ad_account_id)}/adimages", {"url": image_url})
        return _image_hash(data)

    async def upload_image_bytes(self, ad_account_id: str, content: bytes, content_type: str = "image/png") -> str:
        data = await self.post_file(f"{act_id(ad_account_id)}/adimages", "bytes", "ad-image.png", content, content_type)
        return _image_hash(data)


def _image_hash(data: dict[str, Any]) -> str:
    # adimages answers either {"images": {name: {"hash": ...}}} or {"data": [{"hash": ...}]}.
    images = data.get("images")
    if isinstance(images, dict):
        for item in images.values():
            if isinstance(item, dict) and item.get("hash"):
                return item["hash"]
    rows = data.get("data")
    if isinstance(rows, list) and rows and rows[0].get("hash"):
        return rows[0]["hash"]
    raise MetaGraphError("Image upload returned no hash")
