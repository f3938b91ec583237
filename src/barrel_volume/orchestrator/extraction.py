from __future__ import annotations

import base64
import hashlib
import json
import mimetypes
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
import requests
from openai import OpenAI, APIConnectionError, APITimeoutError, APIStatusError

from ..config import AnalyzerSettings
from ..domain.models import Dataset, dataset_to_json_obj
from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .constants import PRIMARY_KEY_COLUMN, STAGE_EXTRACTING, STAGE_LABELS, STAGE_VERIFYING
from .parser import JsonValidationError, parse_and_validate_batch

LOG = get_logger("barreldb-extraction")


class AnalysisFailure(Exception):
    """A pipeline stage could not produce a usable batch."""

    stage: str = ""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def stage_label(self) -> str:
        return STAGE_LABELS.get(self.stage, self.stage or "analysis")


class ExtractionFailure(AnalysisFailure):
    stage = STAGE_EXTRACTING


class VerificationFailure(AnalysisFailure):
    stage = STAGE_VERIFYING


class VisionServiceError(Exception):
    """Transport, HTTP or credential problem talking to the vision model."""


# ---------- file helpers ----------
SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/heic", "image/heif"}


@dataclass(frozen=True)
class ImageFacts:
    """Source image metadata kept for run history and response logging."""

    filename: Optional[str]
    mime_type: Optional[str]
    byte_size: Optional[int]
    sha256: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "mime_type": self.mime_type,
            "byte_size": self.byte_size,
            "sha256": self.sha256,
        }


def _guess_mime(path: str) -> Optional[str]:
    mime, _ = mimetypes.guess_type(path)
    if not mime:
        ext = os.path.splitext(path)[1].lower()
        if ext in {".jpg", ".jpeg", ".jpe", ".jfif"}:
            mime = "image/jpeg"
        elif ext == ".png":
            mime = "image/png"
    return mime


def image_facts(path: str) -> ImageFacts:
    size: Optional[int] = None
    sha256: Optional[str] = None
    try:
        size = os.path.getsize(path)
        h = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        sha256 = h.hexdigest()
    except OSError as exc:
        LOG.debug("Could not fingerprint %s: %s", path, exc)
    return ImageFacts(filename=os.path.basename(path), mime_type=_guess_mime(path), byte_size=size, sha256=sha256)


def _b64_data_url(path: str) -> Optional[str]:
    mime = _guess_mime(path)
    if mime not in SUPPORTED_IMAGE_TYPES:
        LOG.error("Unsupported MIME type for table analysis: %s", mime)
        return None
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        LOG.error("Failed to read source image for data URL: %s", e)
        return None
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{b64}"


def _slugify_for_filename(value: Optional[str], *, default: str) -> str:
    if not isinstance(value, str):
        return default
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip())
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    cleaned = cleaned.strip("-_.")
    return cleaned.lower() or default


class ModelResponseStore:
    """Persist raw model replies per analysis run for later inspection."""

    def __init__(self, *, root_dir: Optional[str], facts: ImageFacts) -> None:
        self.run_dir: Optional[str] = None
        try:
            root = find_project_root(root_dir or os.getcwd())
            base_dir = os.path.join(var_dir(root), "model_responses")
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
            slug = _slugify_for_filename(facts.filename or "page", default="page")
            sha_chunk = (facts.sha256 or "")[:8]
            run_folder = "_".join(part for part in (timestamp, slug, sha_chunk) if part)
            self.run_dir = os.path.join(base_dir, run_folder)
            os.makedirs(self.run_dir, exist_ok=True)
        except OSError as exc:
            LOG.warning("Response storage disabled: %s", exc)
            self.run_dir = None

    def write(self, scope: str, text: Optional[str]) -> Optional[str]:
        if not self.run_dir or text is None:
            return None
        filename = f"{_slugify_for_filename(scope or 'response', default='response')}.txt"
        path = os.path.join(self.run_dir, filename)
        try:
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as exc:
            LOG.warning("Failed to persist %s response to %s: %s", scope, path, exc)
            return None
        LOG.debug("Stored %s response at %s", scope, path)
        return path


# ---------- reply parsing ----------
def _extract_fenced_json(text: str) -> Optional[str]:
    """If the model wrapped JSON in ``` or ```json fences, return the inner content."""
    if not isinstance(text, str):
        return None
    match = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if match and match.group(1):
        return match.group(1).strip()
    return None


def _scavenge_json_block(s: str) -> Optional[Any]:
    if not s:
        return None

    candidates: List[str] = []
    fenced = _extract_fenced_json(s)
    if fenced:
        candidates.append(fenced)

    # A table reply is an array; try that slice before any object slice.
    start_arr = s.find("[")
    end_arr = s.rfind("]")
    if start_arr != -1 and end_arr != -1 and end_arr > start_arr:
        candidates.append(s[start_arr : end_arr + 1])

    start_obj = s.find("{")
    end_obj = s.rfind("}")
    if start_obj != -1 and end_obj != -1 and end_obj > start_obj:
        candidates.append(s[start_obj : end_obj + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def parse_model_reply(text: Optional[str]) -> Dataset:
    """Decode a model reply into a validated Dataset.

    Raises JsonValidationError when the reply is empty, not JSON, or not an
    array of row objects.
    """
    if text is not None and not isinstance(text, str):
        raise JsonValidationError(f"Model reply is {type(text).__name__}, not text")
    if not text or not text.strip():
        raise JsonValidationError("Model returned an empty reply")
    stripped = text.strip()
    try:
        payload = json.loads(stripped)
    except ValueError:
        LOG.debug("Direct JSON parse failed; scavenging (first 500 chars: %r)", stripped[:500])
        payload = _scavenge_json_block(stripped)
        if payload is None:
            raise JsonValidationError("Model reply is not valid JSON")
    if isinstance(payload, dict):
        # Some models wrap the array: {"rows": [...]}
        lists = [v for v in payload.values() if isinstance(v, list)]
        if len(lists) == 1:
            payload = lists[0]
    return parse_and_validate_batch(payload)


# ---------- vision clients ----------
class VisionClient(Protocol):
    model_name: str

    def complete(self, prompt: str, image_data_url: str, *, followup: Optional[str] = None) -> str:
        ...


class OpenRouterClient:
    """Thin wrapper around OpenRouter chat-completions requests."""

    ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

    def __init__(self, settings: AnalyzerSettings, *, temperature: float = 0.0, max_tokens: int = 16000) -> None:
        self.settings = settings
        self.model_name = settings.model_name
        self.temperature = temperature
        self.max_tokens = max_tokens

    def complete(self, prompt: str, image_data_url: str, *, followup: Optional[str] = None) -> str:
        if not self.settings.api_key:
            raise VisionServiceError("OPEN_ROUTER_API_KEY is not set")
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_data_url}},
        ]
        if followup:
            content.append({"type": "text", "text": followup})
        payload = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": content}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.post(
                self.ENDPOINT,
                headers=headers,
                json=payload,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise VisionServiceError(f"OpenRouter request failed: {exc}") from exc

        if resp.status_code >= 400:
            LOG.error("OpenRouter HTTP %s: %s", resp.status_code, resp.text[:500])
            raise VisionServiceError(f"OpenRouter returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise VisionServiceError("OpenRouter returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise VisionServiceError("OpenRouter returned an unexpected body shape")
        choices = body.get("choices") or []
        if not isinstance(choices, list) or not choices:
            LOG.error("OpenRouter returned no choices: %s", str(body)[:500])
            raise VisionServiceError("OpenRouter returned no choices")
        if not isinstance(choices[0], dict):
            raise VisionServiceError("OpenRouter returned a malformed choice")
        message = choices[0].get("message") or {}
        text = message.get("content") if isinstance(message, dict) else None
        if text is None:
            return ""
        if not isinstance(text, str):
            raise VisionServiceError("OpenRouter reply content is not text")
        return text


class OpenAIVisionClient:
    """Chat Completions (vision) through the official SDK."""

    def __init__(self, settings: AnalyzerSettings) -> None:
        self.settings = settings
        self.model_name = settings.model_name

    def complete(self, prompt: str, image_data_url: str, *, followup: Optional[str] = None) -> str:
        if not self.settings.api_key:
            raise VisionServiceError("OPENAI_API_KEY is not set")
        content: List[Dict[str, Any]] = [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": image_data_url}},
        ]
        if followup:
            content.append({"type": "text", "text": followup})
        messages = [
            {
                "role": "system",
                "content": "You are a strict JSON generator. Output ONLY a JSON array. No prose, no markdown fences.",
            },
            {"role": "user", "content": content},
        ]

        http_client = httpx.Client(
            timeout=httpx.Timeout(connect=10.0, read=float(self.settings.timeout_seconds), write=30.0, pool=10.0),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )
        client = OpenAI(
            api_key=self.settings.api_key,
            base_url=self.settings.base_url,
            http_client=http_client,
            max_retries=0,
        )
        try:
            completion = client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                timeout=float(self.settings.timeout_seconds),
            )
        except (APIConnectionError, APITimeoutError) as e:
            raise VisionServiceError(f"Network/timeout while calling OpenAI: {e}") from e
        except APIStatusError as e:
            body = getattr(getattr(e, "response", None), "text", None)
            LOG.error("OpenAI API returned %s. Body preview: %r", getattr(e, "status_code", "?"), (body[:300] if body else None))
            raise VisionServiceError(f"OpenAI API returned HTTP {getattr(e, 'status_code', '?')}") from e
        finally:
            http_client.close()

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice and getattr(choice, "message", None) else None
        usage = getattr(completion, "usage", None)
        usage_dict = {k: getattr(usage, k, None) if usage else None for k in ("prompt_tokens", "completion_tokens", "total_tokens")}
        LOG.info("Chat completion finished id=%s usage=%s", getattr(completion, "id", None), usage_dict)
        return text or ""


def build_vision_client(settings: AnalyzerSettings) -> VisionClient:
    if settings.backend == "openai":
        LOG.info("Backend selected: OpenAI (model=%s)", settings.model_name)
        return OpenAIVisionClient(settings)
    LOG.info("Backend selected: OpenRouter (model=%s)", settings.model_name)
    return OpenRouterClient(settings)


# ---------- prompts ----------
def _extraction_prompt() -> str:
    return f"""
You transcribe printed tables of oak barrel volumes. The image may hold several
table fragments; consolidate them into ONE JSON array of row objects.

Rules:
1. One object per horizontal row of the combined table.
2. Every value is a cell object: {{"value": <number or null>, "confidence": "high" | "medium" | "low"}}.
   "high" = perfectly clear, "medium" = slightly blurry or ambiguous, "low" = hard to read.
3. The wet-height column is the row identifier. Its key MUST be exactly "{PRIMARY_KEY_COLUMN}" and it MUST
   be the first key of every object.
4. Volume column keys combine capacity and bung diameter: "{{Capacity}}L_Diam{{Diameter}}",
   e.g. "390L_Diam80", "400L_Diam81".
5. Rows from different fragments with the same "{PRIMARY_KEY_COLUMN}" are merged into one object.
6. Empty cells, dots (.) and dashes (-) are {{"value": null, "confidence": "high"}}. Never shift a value into
   a neighbouring column. Keep transcribing while a row still has at least one value.
7. Heights and volumes are JSON numbers.
8. Output ONLY the raw JSON array.
""".strip()


def _verification_prompt() -> str:
    return f"""
You audit a JSON transcription of the barrel volume tables in this image and return
a corrected copy.

Rules:
1. Output the same array with the same keys and order; change only "value" and "confidence".
2. For each row ("{PRIMARY_KEY_COLUMN}") and each column, find the cell in the image, fix wrong values and
   reassess confidence ("high", "medium", "low").
3. Empty cells, dots (.) and dashes (-) are {{"value": null, "confidence": "high"}}.
4. Within one row and one capacity (all "390L_..." columns, etc.), once a value is null every later
   column of that capacity must be null as well. A number after a null means a misread cell: look at
   the image again and correct the whole sequence.
5. Output ONLY the raw JSON array.
""".strip()


# ---------- stages ----------
def _prepare_image(image_path: str, failure: type) -> str:
    if not os.path.isfile(image_path):
        raise failure(f"Image not found: {image_path}")
    url = _b64_data_url(image_path)
    if not url:
        raise failure(f"Unsupported or unreadable image: {os.path.basename(image_path)}")
    approx_mb = round(len(url) / (1024 * 1024), 2)
    if approx_mb > 15:
        LOG.warning("Large payload (~%.2f MiB). Consider downscaling the scan.", approx_mb)
    return url


def _run_stage(
    failure: type,
    client: VisionClient,
    prompt: str,
    image_url: str,
    *,
    followup: Optional[str] = None,
    responses: Optional[ModelResponseStore] = None,
) -> Dataset:
    label = STAGE_LABELS[failure.stage]
    t0 = time.perf_counter()
    try:
        text = client.complete(prompt, image_url, followup=followup)
    except VisionServiceError as exc:
        raise failure(str(exc)) from exc
    if responses is not None:
        responses.write(label, text)
    try:
        batch = parse_model_reply(text)
    except JsonValidationError as exc:
        raise failure(f"AI {label} response is not a valid array of objects: {exc}") from exc
    LOG.info("AI %s returned %d rows in %.1fs (model=%s)", label, len(batch), time.perf_counter() - t0, client.model_name)
    return batch


def extract_table_from_image(
    image_path: str,
    client: VisionClient,
    *,
    responses: Optional[ModelResponseStore] = None,
) -> Dataset:
    """Stage 1: transcribe the tables in an image. Raises ExtractionFailure."""
    url = _prepare_image(image_path, ExtractionFailure)
    return _run_stage(ExtractionFailure, client, _extraction_prompt(), url, responses=responses)


def verify_table_data(
    image_path: str,
    extracted: Dataset,
    client: VisionClient,
    *,
    responses: Optional[ModelResponseStore] = None,
) -> Dataset:
    """Stage 2: have the model re-check a transcription against the image.

    Raises VerificationFailure.
    """
    url = _prepare_image(image_path, VerificationFailure)
    data_string = json.dumps(dataset_to_json_obj(extracted), ensure_ascii=False, indent=2)
    followup = f"Here is the JSON data to verify:\n\n{data_string}"
    return _run_stage(VerificationFailure, client, _verification_prompt(), url, followup=followup, responses=responses)
