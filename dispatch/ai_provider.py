"""
AI vendor-recommendation providers.

Exactly one provider is built at process start by ``create_ai_provider_from_env``:
  AI_PROVIDER = mock | gemini | azure_openai          (default: mock)
  GEMINI_API_KEY, GEMINI_MODEL (gemini-2.0-flash), GEMINI_TIMEOUT_S (20)
  AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY, AZURE_OPENAI_DEPLOYMENT (gpt-4o),
  AZURE_OPENAI_API_VERSION (2025-01-01-preview), AZURE_OPENAI_TIMEOUT_S (30)

``generate_recommendation`` never raises: timeouts, HTTP errors, malformed
content and unexpected exceptions all come back as ``success=False``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any
from urllib import request
from urllib.error import HTTPError

from dispatch.settings import _env_float

logger = logging.getLogger(__name__)

MAX_RECOMMENDED_VENDORS = 3
SYSTEM_PROMPT = "You are a field service dispatch AI. You respond only with valid JSON."
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

_provider_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="ai-provider")


@dataclass
class VendorCandidate:
    vendor_id: str
    name: str
    service_area: str | None = None
    specializations: list[str] = field(default_factory=list)
    rating: float | None = None
    available_slots: int = 0

    @classmethod
    def from_vendor(cls, vendor: dict[str, Any]) -> VendorCandidate:
        return cls(
            vendor_id=str(vendor["vendor_id"]),
            name=str(vendor.get("name", "")),
            service_area=vendor.get("service_area"),
            specializations=list(vendor.get("specializations") or []),
            rating=float(vendor["rating"]) if vendor.get("rating") is not None else None,
            available_slots=max(0, int(vendor.get("capacity_limit", 0)) - int(vendor.get("current_capacity", 0))),
        )


@dataclass
class JobContext:
    job_id: str
    title: str
    description: str
    service_type: str
    service_address: str
    candidates: list[VendorCandidate] = field(default_factory=list)


@dataclass
class RecommendationResult:
    success: bool
    provider: str
    model_version: str
    latency_ms: int = 0
    recommended_vendor_ids: list[str] = field(default_factory=list)
    reasoning: str | None = None
    job_summary: str | None = None
    error_message: str | None = None


class ProviderHTTPError(RuntimeError):
    def __init__(self, status: int, detail: str) -> None:
        super().__init__(f"HTTP {status}: {detail}")
        self.status = status
        self.detail = detail


def build_prompt(context: JobContext) -> str:
    vendor_lines = "\n".join(
        "- ID: {id}, Name: {name}, Area: {area}, Skills: {skills}, Rating: {rating}, Available slots: {slots}".format(
            id=v.vendor_id,
            name=v.name,
            area=v.service_area or "Any",
            skills=", ".join(v.specializations) or "General",
            rating=f"{v.rating:.1f}" if v.rating is not None else "N/A",
            slots=v.available_slots,
        )
        for v in context.candidates
    )
    return f"""Analyze the following field service job and recommend the best vendors from the list.

Job Details:
- Title: {context.title}
- Description: {context.description}
- Service Type: {context.service_type}
- Location: {context.service_address}

Available Vendors:
{vendor_lines}

Respond ONLY with valid JSON in this exact format:
{{
  "jobSummary": "2-3 sentence summary of the job and what needs to be done",
  "recommendedVendorIds": ["vendor-id-1", "vendor-id-2"],
  "reasoning": "Brief explanation of why these vendors were chosen based on skills, location, and availability"
}}

Select 1-3 best-fit vendors based on service type match, service area, rating, and availability.
If no vendors match the service type, return an empty array for recommendedVendorIds.
"""


def parse_recommendation_text(
    text: str,
    candidates: list[VendorCandidate],
) -> tuple[list[str], str | None, str | None]:
    """Extract (vendor ids, reasoning, job summary) from model output.

    The JSON object is taken between the first ``{`` and the last ``}``. Ids not
    present in ``candidates`` are dropped; at most three are kept.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end < start:
        raise ValueError("no JSON object found in response")
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON in response: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValueError("response JSON is not an object")
    raw_ids = data.get("recommendedVendorIds") or []
    if not isinstance(raw_ids, list):
        raise ValueError("recommendedVendorIds must be a list")
    allowed = {c.vendor_id for c in candidates}
    vendor_ids: list[str] = []
    for raw in raw_ids:
        vendor_id = str(raw).strip()
        if vendor_id in allowed and vendor_id not in vendor_ids:
            vendor_ids.append(vendor_id)
    reasoning = data.get("reasoning")
    summary = data.get("jobSummary")
    return (
        vendor_ids[:MAX_RECOMMENDED_VENDORS],
        str(reasoning) if reasoning is not None else None,
        str(summary) if summary is not None else None,
    )


class AIProvider:
    name = "base"

    def __init__(self, *, model_version: str, timeout_s: float) -> None:
        self.model_version = model_version
        self.timeout_s = float(timeout_s)

    def _complete(self, context: JobContext, *, timeout_s: float) -> str:
        raise NotImplementedError

    def _failure(self, message: str, *, started: float) -> RecommendationResult:
        return RecommendationResult(
            success=False,
            provider=self.name,
            model_version=self.model_version,
            latency_ms=int((time.monotonic() - started) * 1000),
            error_message=message,
        )

    def generate_recommendation(
        self,
        context: JobContext,
        *,
        timeout_s: float | None = None,
    ) -> RecommendationResult:
        budget = self.timeout_s if timeout_s is None else min(self.timeout_s, timeout_s)
        started = time.monotonic()
        if budget <= 0:
            return self._failure("no time budget left for AI call", started=started)
        future = _provider_pool.submit(self._complete, context, timeout_s=budget)
        try:
            text = future.result(timeout=budget)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning("%s call timed out after %.1fs for job %s", self.name, budget, context.job_id)
            return self._failure(f"{self.name} call timed out after {budget:.0f}s", started=started)
        except ProviderHTTPError as exc:
            logger.warning("%s returned HTTP %s for job %s: %s", self.name, exc.status, context.job_id, exc.detail)
            return self._failure(f"{self.name} API error {exc.status}: {exc.detail}", started=started)
        except Exception as exc:
            logger.exception("%s recommendation failed for job %s", self.name, context.job_id)
            return self._failure(str(exc) or exc.__class__.__name__, started=started)

        try:
            vendor_ids, reasoning, summary = parse_recommendation_text(text, context.candidates)
        except ValueError as exc:
            logger.warning("failed to parse %s response for job %s: %s", self.name, context.job_id, exc)
            return self._failure("Failed to parse AI response", started=started)
        return RecommendationResult(
            success=True,
            provider=self.name,
            model_version=self.model_version,
            latency_ms=int((time.monotonic() - started) * 1000),
            recommended_vendor_ids=vendor_ids,
            reasoning=reasoning,
            job_summary=summary,
        )


class MockAIProvider(AIProvider):
    """Deterministic ranking: specialization match, then rating, then free slots."""

    name = "mock"

    def __init__(self, *, model_version: str = "mock-ranker-v1", timeout_s: float = 5.0, top_n: int = 2) -> None:
        super().__init__(model_version=model_version, timeout_s=timeout_s)
        self.top_n = max(0, min(MAX_RECOMMENDED_VENDORS, int(top_n)))

    def _complete(self, context: JobContext, *, timeout_s: float) -> str:
        service_type = context.service_type.strip().lower()
        ranked = sorted(
            context.candidates,
            key=lambda v: (
                service_type in {s.lower() for s in v.specializations},
                v.rating or 0.0,
                v.available_slots,
            ),
            reverse=True,
        )
        chosen = ranked[: self.top_n]
        return json.dumps(
            {
                "jobSummary": (
                    f"[MOCK] Job requires {context.service_type} services at {context.service_address}. "
                    f"{context.description}"
                ).strip(),
                "recommendedVendorIds": [v.vendor_id for v in chosen],
                "reasoning": (
                    f"[MOCK] Based on the {context.service_type} service requirement, these vendors have "
                    "matching specializations and available capacity."
                ),
            }
        )


def _post_json(url: str, payload: dict[str, Any], *, headers: dict[str, str], timeout_s: float) -> dict[str, Any]:
    body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
    req = request.Request(url, data=body, method="POST", headers={"Content-Type": "application/json", **headers})
    try:
        with request.urlopen(req, timeout=timeout_s) as resp:
            raw = resp.read().decode("utf-8")
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise ProviderHTTPError(exc.code, _error_detail(detail)) from exc
    return json.loads(raw) if raw else {}


def _error_detail(raw: str) -> str:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw[:100]
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message") or "Unknown error")
    return raw[:100]


class GeminiProvider(AIProvider):
    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str,
        model_version: str = "gemini-2.0-flash",
        timeout_s: float = 20.0,
        transport: Callable[..., dict[str, Any]] = _post_json,
    ) -> None:
        if not api_key.strip():
            raise ValueError("GEMINI_API_KEY must not be empty")
        super().__init__(model_version=model_version, timeout_s=timeout_s)
        self._api_key = api_key.strip()
        self._transport = transport

    def _complete(self, context: JobContext, *, timeout_s: float) -> str:
        url = f"{GEMINI_BASE_URL}/{self.model_version}:generateContent?key={self._api_key}"
        payload = {
            "contents": [{"parts": [{"text": f"{SYSTEM_PROMPT}\n\n{build_prompt(context)}"}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 1024},
        }
        data = self._transport(url, payload, headers={}, timeout_s=timeout_s)
        try:
            return str(data["candidates"][0]["content"]["parts"][0]["text"] or "")
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError("unexpected Gemini response shape") from exc


class AzureOpenAIProvider(AIProvider):
    name = "azure_openai"

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str,
        deployment: str = "gpt-4o",
        api_version: str = "2025-01-01-preview",
        timeout_s: float = 30.0,
        client: Any | None = None,
    ) -> None:
        super().__init__(model_version=deployment, timeout_s=timeout_s)
        self._endpoint = endpoint.strip().rstrip("/")
        self._api_key = api_key.strip()
        self._api_version = api_version
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import openai
            except ImportError as exc:
                raise RuntimeError("openai package is required for AI_PROVIDER=azure_openai") from exc
            self._client = openai.AzureOpenAI(
                azure_endpoint=self._endpoint,
                api_key=self._api_key,
                api_version=self._api_version,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self._client

    def generate_recommendation(
        self,
        context: JobContext,
        *,
        timeout_s: float | None = None,
    ) -> RecommendationResult:
        if self._client is None and (not self._endpoint or not self._api_key):
            logger.warning("Azure OpenAI not configured (missing endpoint or api key)")
            return self._failure("Azure OpenAI endpoint or API key not configured.", started=time.monotonic())
        return super().generate_recommendation(context, timeout_s=timeout_s)

    def _complete(self, context: JobContext, *, timeout_s: float) -> str:
        response = self._get_client().chat.completions.create(
            model=self.model_version,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(context)},
            ],
            max_completion_tokens=1024,
            timeout=timeout_s,
        )
        return response.choices[0].message.content or ""


def create_ai_provider_from_env(environ: Mapping[str, str] | None = None) -> AIProvider:
    env = os.environ if environ is None else environ
    provider = env.get("AI_PROVIDER", "mock").strip().lower() or "mock"
    if provider == "mock":
        return MockAIProvider()
    if provider == "gemini":
        api_key = env.get("GEMINI_API_KEY", "").strip()
        model = env.get("GEMINI_MODEL", "gemini-2.0-flash").strip() or "gemini-2.0-flash"
        if not api_key:
            logger.warning("GEMINI_API_KEY not configured; using mock recommendations")
            return MockAIProvider(model_version=f"{model}-mock")
        return GeminiProvider(
            api_key=api_key,
            model_version=model,
            timeout_s=_env_float(env, "GEMINI_TIMEOUT_S", default=20.0, minimum=0.1),
        )
    if provider == "azure_openai":
        return AzureOpenAIProvider(
            endpoint=env.get("AZURE_OPENAI_ENDPOINT", ""),
            api_key=env.get("AZURE_OPENAI_API_KEY", ""),
            deployment=env.get("AZURE_OPENAI_DEPLOYMENT", "gpt-4o").strip() or "gpt-4o",
            api_version=env.get("AZURE_OPENAI_API_VERSION", "2025-01-01-preview").strip() or "2025-01-01-preview",
            timeout_s=_env_float(env, "AZURE_OPENAI_TIMEOUT_S", default=30.0, minimum=0.1),
        )
    raise RuntimeError(f"unsupported AI provider: {provider}")
