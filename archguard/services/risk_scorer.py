"""HttpRiskScorer — best-effort AI re-scoring of detections.

Forwards detections to an external semantic classifier over HTTP and copies
the returned confidence and recommendations onto each
:class:`~archguard.core.detection_engine.Detection`.  The deterministic risk
level is kept; the classifier only enriches.

Detections are posted in batches of :data:`BATCH_SIZE`.  A batch that fails
(network error, non-2xx, malformed body) leaves its detections unchanged and
increments ``archguard_risk_scorer_errors_total``; the remaining batches are
still attempted.  The orchestrator bounds the whole call with its own
timeout, so a slow classifier never delays completion beyond that.

**Request** (``POST <url>``)::

    {
      "job_id": "…",
      "detections": [
        {"index": 0, "pattern_name": "CPF", "category": "document",
         "matched_value": "123.456.789-09", "context": "…",
         "source_file": "clientes.csv", "risk_level": "high"}
      ]
    }

**Response**::

    {"results": [{"index": 0, "confidence": 0.93,
                  "recommendations": ["Mask CPF numbers in logs"]}]}

The request carries raw matched values; only point this at a classifier
trusted with the PII it is asked to assess.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Optional, Sequence

import httpx
from prometheus_client import Counter

from archguard.core.detection_engine import Detection

logger = logging.getLogger(__name__)

#: Detections sent per HTTP request.
BATCH_SIZE = 5

risk_scorer_errors_total = Counter(
    "archguard_risk_scorer_errors_total",
    "Failed AI re-scoring batches",
    ["error_type"],
)


def _clamp(value: Any, low: float, high: float) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return max(low, min(high, number))


class HttpRiskScorer:
    """Re-scoring client for an HTTP classifier.

    Args:
        url: Classifier endpoint.
        timeout: Per-request timeout in seconds.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a client is created for each call.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._http_client = http_client

    async def rescore(self, job_id: str, detections: Sequence[Detection]) -> list[Detection]:
        enriched = list(detections)
        for start in range(0, len(enriched), BATCH_SIZE):
            batch = enriched[start:start + BATCH_SIZE]
            payload = {
                "job_id": job_id,
                "detections": [
                    {
                        "index": start + i,
                        "pattern_name": d.pattern_name,
                        "category": d.category.value,
                        "matched_value": d.matched_value,
                        "context": d.context,
                        "source_file": d.source_file,
                        "risk_level": d.risk_level.value,
                    }
                    for i, d in enumerate(batch)
                ],
            }
            try:
                body = await self._post(payload)
            except httpx.HTTPStatusError as exc:
                risk_scorer_errors_total.labels(error_type="http_error").inc()
                logger.warning(
                    "Risk scorer HTTP %d job_id=%s batch_start=%d",
                    exc.response.status_code,
                    job_id,
                    start,
                )
                continue
            except httpx.RequestError as exc:
                risk_scorer_errors_total.labels(error_type="network_error").inc()
                logger.warning("Risk scorer network error job_id=%s batch_start=%d: %s", job_id, start, exc)
                continue
            except ValueError as exc:
                risk_scorer_errors_total.labels(error_type="invalid_response").inc()
                logger.warning("Risk scorer returned invalid JSON job_id=%s: %s", job_id, exc)
                continue

            self._apply(enriched, body, start, len(batch))
        return enriched

    async def _post(self, payload: dict[str, Any]) -> Any:
        if self._http_client is not None:
            response = await self._http_client.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _apply(enriched: list[Detection], body: Any, start: int, count: int) -> None:
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            risk_scorer_errors_total.labels(error_type="invalid_response").inc()
            logger.warning("Risk scorer response missing 'results' list")
            return
        for item in results:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            if not isinstance(index, int) or not start <= index < start + count:
                continue
            recommendations = item.get("recommendations")
            enriched[index] = dataclasses.replace(
                enriched[index],
                ai_confidence=_clamp(item.get("confidence"), 0.0, 1.0),
                recommendations=tuple(str(r) for r in recommendations) if isinstance(recommendations, list) else (),
            )
