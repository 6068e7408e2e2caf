"""
Seed Dream 4.5 adapter (KIE-hosted task API).

Flow:
  1. POST {base}/jobs/createTask
  2. If the response already carries an image, return it
  3. Otherwise poll the result endpoints with the returned taskId/recordId.
     Each endpoint is tried with POST then GET; 404 moves on to the next one.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from config import (
    SEED_DREAM_DEFAULT_BASE_URL,
    SEED_DREAM_MAX_POLLS,
    SEED_DREAM_MODEL,
    SEED_DREAM_POLL_INTERVAL_SECONDS,
)
from providers.base import BaseProvider, ProviderError

logger = logging.getLogger("providers.seedream")

# (path, allow_post, allow_get)
_RESULT_ENDPOINTS: tuple[tuple[str, bool, bool], ...] = (
    ("/jobs/getResult", True, True),
    ("/jobs/getTaskResult", True, True),
    ("/jobs/taskResult", False, True),
    ("/jobs/getTaskDetail", True, True),
    ("/common/getTaskDetail", True, True),
)


def resolve_base_url(base_url: Optional[str]) -> str:
    trimmed = (base_url or "").strip()
    if not trimmed:
        return SEED_DREAM_DEFAULT_BASE_URL
    return trimmed.rstrip("/")


def _normalize_data_uri(value: str) -> str:
    return value if value.startswith("data:") else f"data:image/png;base64,{value}"


def _response_code(body: dict[str, Any]) -> Optional[int]:
    code = body.get("code")
    if isinstance(code, str):
        try:
            return int(code)
        except ValueError:
            return None
    return code if isinstance(code, int) else None


def extract_image(body: dict[str, Any]) -> Optional[dict[str, str]]:
    """
    Pull an image out of any of the response shapes the API is known to use.
    Returns {"data_uri": ...}, {"url": ...} or None.
    """
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    output = data.get("output") or body.get("output")
    first = output[0] if isinstance(output, list) and output else output
    first = first if isinstance(first, dict) else {}

    b64 = first.get("b64_json") or first.get("base64") or first.get("imageBase64") or body.get("image")
    url = first.get("url") or body.get("url")

    raw_json = data.get("resultJson") or body.get("resultJson")
    parsed: dict[str, Any] = {}
    if isinstance(raw_json, str):
        try:
            loaded = json.loads(raw_json)
            parsed = loaded if isinstance(loaded, dict) else {}
        except ValueError:
            parsed = {}
    elif isinstance(raw_json, dict):
        parsed = raw_json

    b64_from_json = parsed.get("resultBase64") or parsed.get("base64") or parsed.get("imageBase64")
    urls_from_json = parsed.get("resultUrls") or parsed.get("urls")
    direct_urls = data.get("resultUrls") or body.get("resultUrls")

    if b64:
        return {"data_uri": _normalize_data_uri(str(b64))}
    if b64_from_json:
        return {"data_uri": _normalize_data_uri(str(b64_from_json))}
    if url:
        return {"url": str(url)}
    if isinstance(urls_from_json, list) and urls_from_json:
        return {"url": str(urls_from_json[0])}
    if isinstance(direct_urls, list) and direct_urls:
        return {"url": str(direct_urls[0])}
    return None


def _task_state(body: dict[str, Any]) -> Optional[str]:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return data.get("state") or data.get("status") or body.get("state") or body.get("status")


def _fail_message(body: dict[str, Any]) -> str:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return str(data.get("failMsg") or data.get("error") or body.get("error") or "Seed Dream job failed")


class SeedDreamProvider(BaseProvider):
    name = "Seed Dream"

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def _message(self, resp: httpx.Response, default: str) -> str:
        return self._error_detail(resp, "error", "message", "msg") or default

    def _check_body(self, body: dict[str, Any], stage: str) -> None:
        code = _response_code(body)
        if code is not None and code != 200:
            message = body.get("message") or body.get("msg") or "Seed Dream error"
            raise ProviderError(f"{stage}: {message} (code {code})")

    def _resolve(self, found: dict[str, str]) -> str:
        if "data_uri" in found:
            return found["data_uri"]
        return self.download(found["url"], default_mime="image/png")

    def _inspect_poll_body(self, body: dict[str, Any]) -> Optional[str]:
        """Return the image when ready, raise on failure, None while still running."""
        self._check_body(body, "getResult")
        found = extract_image(body)
        if found:
            return self._resolve(found)
        if _task_state(body) in {"fail", "failed"}:
            raise ProviderError(_fail_message(body))
        return None

    def _poll_once(self, endpoint: str, api_key: str, ids: dict[str, str], method: str) -> tuple[str, Optional[str]]:
        """
        Query one result endpoint.
        Returns ("done", image) | ("pending", None) | ("missing", None).
        """
        if method == "POST":
            resp = self.client.post(endpoint, headers=self._headers(api_key), json=ids)
        else:
            resp = self.client.get(endpoint, headers=self._headers(api_key), params=ids)
        if resp.status_code == 404:
            return "missing", None
        if resp.status_code >= 400:
            message = self._message(resp, f"Seed Dream poll error {resp.status_code}")
            raise ProviderError(f"getResult: {message}", status_code=resp.status_code)
        image = self._inspect_poll_body(resp.json())
        return ("done", image) if image else ("pending", None)

    def poll_for_result(self, base_url: str, api_key: str, ids: dict[str, str]) -> str:
        if not ids:
            raise ProviderError("Seed Dream: missing identifiers to poll")

        for round_no in range(SEED_DREAM_MAX_POLLS):
            for path, allow_post, allow_get in _RESULT_ENDPOINTS:
                methods = [m for m, allowed in (("POST", allow_post), ("GET", allow_get)) if allowed]
                outcome = "missing"
                for method in methods:
                    outcome, image = self._poll_once(f"{base_url}{path}", api_key, ids, method)
                    if outcome == "done":
                        logger.info("seed_dream_result_ready endpoint=%s round=%s", path, round_no)
                        return image
                    if outcome == "pending":
                        break
                if outcome == "pending":
                    # The endpoint exists but the task is still running.
                    break
            self._sleep(SEED_DREAM_POLL_INTERVAL_SECONDS)

        raise ProviderError("Seed Dream job created but no result after polling")

    def generate_image(
        self,
        api_key: str,
        prompt: str,
        aspect_ratio: str = "1:1",
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> str:
        prompt = (prompt or "").strip()
        if not prompt:
            raise ProviderError("prompt is required", status_code=400)

        target = resolve_base_url(base_url)
        payload: dict[str, Any] = {
            "model": SEED_DREAM_MODEL,
            "input": {"prompt": prompt, "aspect_ratio": aspect_ratio, "quality": "basic"},
        }
        if callback_url and callback_url.strip():
            payload["callBackUrl"] = callback_url.strip()

        resp = self.client.post(f"{target}/jobs/createTask", headers=self._headers(api_key), json=payload)
        if resp.status_code == 404:
            raise ProviderError(
                f"createTask 404 at {target}/jobs/createTask. "
                f"Leave baseUrl empty or set to {SEED_DREAM_DEFAULT_BASE_URL}.",
                status_code=502,
            )
        if resp.status_code >= 400:
            message = self._message(resp, f"Seed Dream error {resp.status_code}")
            raise ProviderError(f"createTask: {message}", status_code=resp.status_code)

        body = resp.json()
        self._check_body(body, "createTask")
        found = extract_image(body)
        if found:
            return self._resolve(found)

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        ids = {}
        task_id = data.get("taskId") or body.get("taskId")
        record_id = data.get("recordId") or body.get("recordId")
        if task_id:
            ids["taskId"] = str(task_id)
        if record_id:
            ids["recordId"] = str(record_id)
        if not ids:
            raise ProviderError("Seed Dream: job created but no taskId or recordId returned")

        logger.info("seed_dream_task_created ids=%s", ids)
        return self.poll_for_result(target, api_key, ids)

    def remix_image(self, *args, **kwargs) -> str:
        raise ProviderError("Seed Dream remix is not supported by the current integration")
