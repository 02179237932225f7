from __future__ import annotations

import base64
import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from paperkeep.core.config import settings
from paperkeep.core.logging import get_logger, log_event, log_exception, monotonic_ms
from paperkeep.core.storage import make_s3_client

logger = get_logger(__name__)

_GS_URI_RE = re.compile(r"^gs://([^/]+)(?:/(.*))?$")

POLL_INITIAL_DELAY_S = 0.5
POLL_MAX_DELAY_S = 2.0
POLL_BACKOFF = 1.5


class ExtractionError(RuntimeError):
    pass


class VisionOperationTimeout(ExtractionError):
    pass


@dataclass(frozen=True)
class GcsLocation:
    bucket: str
    prefix: str


def parse_gs_uri(uri: str) -> GcsLocation:
    m = _GS_URI_RE.match(uri.strip())
    if not m:
        raise ExtractionError(f"Invalid gs:// URI: {uri}")
    return GcsLocation(bucket=m.group(1), prefix=(m.group(2) or "").rstrip("/"))


def pdf_page_cap() -> int:
    n = settings.google_vision_pdf_max_pages
    return n if 0 < n <= 20 else 5


class GcsStagingBucket:
    """Temporary input/output area for async PDF OCR (GCS via its S3-interoperable API)."""

    def __init__(self, bucket: str, client: Any | None = None) -> None:
        self.bucket = bucket
        self._client = client or make_s3_client(
            endpoint_url=settings.gcs_endpoint_url,
            region="auto",
            access_key_id=settings.gcs_hmac_access_key_id,
            secret_access_key=settings.gcs_hmac_secret,
            addressing_style="path",
        )

    def put(self, *, key: str, body: bytes, content_type: str) -> None:
        self._client.put_object(Bucket=self.bucket, Key=key, Body=body, ContentType=content_type)

    def list_keys(self, *, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(obj["Key"] for obj in page.get("Contents") or [])
        return sorted(keys)

    def get(self, *, key: str) -> bytes:
        return self._client.get_object(Bucket=self.bucket, Key=key)["Body"].read()

    def delete(self, *, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)


class VisionClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        http: httpx.Client | None = None,
        staging: GcsStagingBucket | None = None,
        output_uri: str | None = None,
        poll_timeout_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.google_vision_api_key
        self._http = http or httpx.Client(
            base_url=settings.google_vision_base_url,
            timeout=settings.google_vision_request_timeout_seconds,
        )
        self._staging = staging
        self._output_uri = (
            output_uri if output_uri is not None else settings.google_vision_pdf_output_uri
        )
        self._poll_timeout_s = (
            poll_timeout_s
            if poll_timeout_s is not None
            else settings.google_vision_poll_timeout_seconds
        )
        self._sleep = sleep

    def _key(self) -> str:
        key = (self._api_key or "").strip()
        if not key:
            raise ExtractionError("GOOGLE_VISION_API_KEY is not set")
        return key

    def _post(self, path: str, payload: dict[str, Any], *, what: str) -> dict[str, Any]:
        resp = self._http.post(path, params={"key": self._key()}, json=payload)
        if resp.status_code >= 400:
            raise ExtractionError(f"{what} failed {resp.status_code}: {resp.text[:500]}")
        return resp.json()

    def annotate_image(self, body: bytes) -> str:
        start = time.monotonic()
        data = self._post(
            "/images:annotate",
            {
                "requests": [
                    {
                        "image": {"content": base64.b64encode(body).decode("ascii")},
                        "features": [{"type": "TEXT_DETECTION", "maxResults": 10}],
                    }
                ]
            },
            what="Vision image OCR",
        )
        first = (data.get("responses") or [{}])[0]
        if first.get("error"):
            raise ExtractionError(first["error"].get("message") or "Vision API error")
        text = (first.get("fullTextAnnotation") or {}).get("text") or ""
        log_event(
            logger,
            "vision.image.finish",
            byte_size=len(body),
            text_chars=len(text),
            duration_ms=monotonic_ms(start),
        )
        return text

    def submit_pdf(self, *, source_uri: str, destination_uri: str, pages: list[int]) -> str:
        data = self._post(
            "/files:asyncBatchAnnotate",
            {
                "requests": [
                    {
                        "inputConfig": {
                            "gcsSource": {"uri": source_uri},
                            "mimeType": "application/pdf",
                        },
                        "features": [{"type": "DOCUMENT_TEXT_DETECTION"}],
                        "pages": pages,
                        "outputConfig": {"gcsDestination": {"uri": destination_uri}},
                    }
                ]
            },
            what="Vision PDF submit",
        )
        name = data.get("name")
        if not name:
            raise ExtractionError("Vision PDF submit failed: missing operation name")
        return name

    def wait_for_operation(self, operation_name: str) -> None:
        started = time.monotonic()
        delay = POLL_INITIAL_DELAY_S
        while time.monotonic() - started < self._poll_timeout_s:
            resp = self._http.get(f"/{operation_name}", params={"key": self._key()})
            if resp.status_code >= 400:
                raise ExtractionError(
                    f"Vision operation poll failed {resp.status_code}: {resp.text[:500]}"
                )
            data = resp.json()
            error = data.get("error") or {}
            if error.get("message"):
                raise ExtractionError(f"Vision operation failed: {error['message']}")
            if data.get("done"):
                return
            self._sleep(delay)
            delay = min(POLL_MAX_DELAY_S, delay * POLL_BACKOFF)
        raise VisionOperationTimeout(
            f"Vision PDF OCR operation {operation_name} still running after "
            f"{self._poll_timeout_s:.0f}s"
        )

    def ocr_pdf(self, body: bytes, *, doc_id: str = "doc") -> str:
        if not self._output_uri:
            log_event(logger, "vision.pdf.skipped", reason="output_uri_not_configured")
            return ""

        start = time.monotonic()
        location = parse_gs_uri(self._output_uri)
        staging = self._staging or GcsStagingBucket(location.bucket)
        stamp = time.time_ns() // 1_000_000
        out_prefix = "/".join(p for p in (location.prefix, "vision", doc_id, str(stamp)) if p)
        source_key = f"{out_prefix}/input.pdf"
        pages = list(range(1, pdf_page_cap() + 1))

        # Vision async PDF OCR only reads from GCS.
        staging.put(key=source_key, body=body, content_type="application/pdf")
        try:
            op_name = self.submit_pdf(
                source_uri=f"gs://{location.bucket}/{source_key}",
                destination_uri=f"gs://{location.bucket}/{out_prefix}/",
                pages=pages,
            )
            try:
                self.wait_for_operation(op_name)
            except VisionOperationTimeout as e:
                # The operation may finish moments later; read whatever output exists.
                log_event(
                    logger,
                    "vision.pdf.poll_timeout",
                    doc_id=doc_id,
                    operation=op_name,
                    error=str(e),
                )
            text = self._collect_pdf_output(staging, prefix=out_prefix)
        finally:
            self._cleanup(staging, prefix=out_prefix)

        log_event(
            logger,
            "vision.pdf.finish",
            doc_id=doc_id,
            pages_requested=len(pages),
            text_chars=len(text),
            duration_ms=monotonic_ms(start),
        )
        return text

    def _collect_pdf_output(self, staging: GcsStagingBucket, *, prefix: str) -> str:
        chunks: list[str] = []
        for key in staging.list_keys(prefix=f"{prefix}/"):
            if not key.endswith(".json"):
                continue
            try:
                parsed = json.loads(staging.get(key=key).decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                log_event(logger, "vision.pdf.output_malformed", output_key=key)
                continue
            for response in parsed.get("responses") or []:
                page_text = ((response.get("fullTextAnnotation") or {}).get("text") or "").strip()
                if page_text:
                    chunks.append(page_text)
        return "\n\n".join(chunks)

    def _cleanup(self, staging: GcsStagingBucket, *, prefix: str) -> None:
        try:
            keys = staging.list_keys(prefix=f"{prefix}/")
        except Exception:  # noqa: BLE001
            log_exception(logger, "vision.pdf.cleanup_failed", prefix=prefix)
            return
        for key in keys:
            try:
                staging.delete(key=key)
            except Exception:  # noqa: BLE001
                log_exception(logger, "vision.pdf.cleanup_failed", output_key=key)


_client: VisionClient | None = None


def get_vision_client() -> VisionClient:
    global _client  # noqa: PLW0603
    if _client is None:
        _client = VisionClient()
    return _client
