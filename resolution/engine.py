"""
Territory resolution engine.

Coordinates cache lookups, parallel provider queries, conflict resolution,
nearest-neighbor fallback, persistence and audit logging.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from deregulated_markets import classify_territory
from logging_config import get_logger
from monitoring.metrics import MetricsCollector

from .cache import FailureMarker, ResolutionCache
from .config import EngineConfig
from .errors import InputError, PersistenceError, ProviderError, ProviderErrorKind
from .fallback import FallbackLocator
from .interfaces import (
    AuditLogEntry,
    BulkResult,
    BulkSummary,
    CandidateAnswer,
    Clock,
    ProviderClient,
    ResolutionFailure,
    ResolutionOutcome,
    ResolutionResult,
    ResolutionState,
    ResolutionSuccess,
    ResolveOptions,
    utc_now,
)
from .postal_code import validate_postal_code
from .resolver import ConflictResolver
from .retry import RetryPolicies, call_with_retry
from .sources.factory import ClientFactory
from .store import TerritoryStore, create_store

logger = get_logger(__name__)

NOT_FOUND = "NOT_FOUND"
ROUTING_ERROR = "ROUTING_ERROR"
CANCELLED = "CANCELLED"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class TerritoryResolutionEngine:
    """
    Resolve ZIP codes to service territories.

    Pipeline stages per request:
    1. Validate format and region membership
    2. Check the memory and store cache tiers (skipped on force_refresh)
    3. Query the factory's providers in parallel under a deadline
    4. Resolve conflicts, or fall back to the nearest known neighbor
    5. Persist, cache and audit-log the outcome

    Collaborators are injected; anything not supplied is built from config.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[TerritoryStore] = None,
        factory: Optional[ClientFactory] = None,
        cache: Optional[ResolutionCache] = None,
        resolver: Optional[ConflictResolver] = None,
        fallback: Optional[FallbackLocator] = None,
        metrics: Optional[MetricsCollector] = None,
        retry_policies: Optional[RetryPolicies] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 32,
    ):
        self.config = config or EngineConfig()
        self.clock = clock
        self.sleep = sleep
        self.store = store or create_store(self.config.database_url)
        self.factory = factory or ClientFactory(self.config)
        self.cache = cache or ResolutionCache(
            self.store,
            clock=clock,
            memory_ttl_cap=self.config.memory_ttl_cap,
            failure_ttl=self.config.failure_ttl,
        )
        self.resolver = resolver or ConflictResolver(self.config.resolver)
        self.fallback = fallback or FallbackLocator(
            self.store,
            self.config.ttl_for_confidence,
            min_confidence=self.config.fallback_min_confidence,
            penalty=self.config.fallback_penalty,
            max_ttl=self.config.fallback_ttl,
        )
        self.metrics = metrics or MetricsCollector(window_minutes=self.config.metrics_window_minutes, clock=clock)
        self.retry_policies = retry_policies or RetryPolicies()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider")

    # ------------------------------------------------------------------
    # Single resolution
    # ------------------------------------------------------------------

    def resolve(self, zip_code: Any, options: Optional[ResolveOptions] = None) -> ResolutionOutcome:
        """
        Resolve one ZIP code.

        Args:
            zip_code: Caller-supplied ZIP
            options: force_refresh, deadline and request_id

        Returns:
            ResolutionSuccess or ResolutionFailure. Never raises for
            provider, input or persistence problems.
        """
        options = options or ResolveOptions()
        request_id = options.request_id or uuid.uuid4().hex[:12]
        start = time.monotonic()
        self._enter(ResolutionState.RECEIVED, request_id, zip_code)

        try:
            zip_code = validate_postal_code(zip_code, self.config.region_min, self.config.region_max)
        except InputError as e:
            failure = ResolutionFailure(
                zip_code=str(zip_code)[:16],
                error_code=e.code,
                message=e.message,
                processing_time_ms=_elapsed_ms(start),
            )
            self._enter(ResolutionState.FAILED, request_id, failure.zip_code)
            self._audit(failure.zip_code, request_id, failure.processing_time_ms, error_code=e.code)
            logger.info(f"Rejected ZIP: {e.message}",
                        extra={"zip_code": failure.zip_code, "request_id": request_id, "error_code": e.code})
            return failure

        try:
            return self._resolve_valid(zip_code, options, request_id, start)
        except Exception as e:
            logger.exception("Unexpected error resolving ZIP",
                             extra={"zip_code": zip_code, "request_id": request_id, "error": str(e)})
            failure = ResolutionFailure(
                zip_code=zip_code,
                error_code=ROUTING_ERROR,
                message="Unexpected error while resolving ZIP code",
                processing_time_ms=_elapsed_ms(start),
            )
            self._enter(ResolutionState.FAILED, request_id, zip_code)
            self._audit(zip_code, request_id, failure.processing_time_ms, error_code=ROUTING_ERROR)
            return failure

    def _resolve_valid(
        self, zip_code: str, options: ResolveOptions, request_id: str, start: float
    ) -> ResolutionOutcome:
        if not options.force_refresh:
            self._enter(ResolutionState.CACHE_CHECK, request_id, zip_code)
            hit = self.cache.get(zip_code)
            if hit is not None:
                self._enter(ResolutionState.CACHE_HIT, request_id, zip_code)
                return self._from_cache(zip_code, hit.value, request_id, start)

        self._enter(ResolutionState.CACHE_MISS, request_id, zip_code)
        deadline = options.deadline if options.deadline is not None else self.config.request_deadline
        deadline_at = start + deadline

        self._enter(ResolutionState.QUERYING, request_id, zip_code)
        clients = self.factory.clients_for(zip_code)
        candidates, source_errors = self._query_parallel(clients, zip_code, deadline_at, request_id)
        queried = tuple(c.name for c in clients)
        now = self.clock()

        if candidates:
            self._enter(ResolutionState.RESOLVING, request_id, zip_code)
            resolved = self.resolver.resolve(
                candidates,
                query_order=queried,
                authoritative=self.factory.authoritative_for(zip_code),
            )
            canonical = resolved.canonical
            result = ResolutionResult(
                zip_code=zip_code,
                city_slug=canonical.city_slug,
                city_display_name=canonical.city_display_name,
                utility_id=canonical.utility_id,
                utility_name=canonical.utility_name,
                market_type=canonical.market_type,
                confidence=resolved.confidence,
                data_source=canonical.provider_name,
                resolved_at=now,
                next_revalidation_at=now + timedelta(seconds=self.config.ttl_for_confidence(resolved.confidence)),
                conflicts=resolved.conflicts,
            )
            if resolved.conflicts:
                logger.info(
                    f"Providers disagreed: {resolved.agreeing_providers} vs {resolved.dissenting_providers}",
                    extra={"zip_code": zip_code, "request_id": request_id},
                )
        else:
            self._enter(ResolutionState.FALLBACK, request_id, zip_code)
            result = self._locate_fallback(zip_code, now)
            if result is None:
                return self._not_found(zip_code, queried, source_errors, request_id, start)

        self._persist(result)
        self._enter(ResolutionState.DONE, request_id, zip_code)
        success = ResolutionSuccess(result=result, cached=False, processing_time_ms=_elapsed_ms(start))
        self._audit(
            zip_code, request_id, success.processing_time_ms,
            sources_queried=queried,
            chosen_source=result.data_source,
            confidence=result.confidence,
            source_errors=source_errors,
        )
        logger.info(
            f"Resolved {zip_code} -> {result.city_slug}/{result.utility_id} ({result.confidence})",
            extra={"zip_code": zip_code, "request_id": request_id, "source": result.data_source,
                   "duration_ms": success.processing_time_ms, "cache_hit": False},
        )
        return success

    def _from_cache(self, zip_code: str, value, request_id: str, start: float) -> ResolutionOutcome:
        elapsed = _elapsed_ms(start)
        if isinstance(value, FailureMarker):
            self._enter(ResolutionState.FAILED, request_id, zip_code)
            self._audit(zip_code, request_id, elapsed, cache_hit=True, error_code=value.error_code)
            return ResolutionFailure(
                zip_code=zip_code,
                error_code=value.error_code,
                message=value.message,
                processing_time_ms=elapsed,
                suggestions=value.suggestions,
                classification=value.classification,
            )

        self._enter(ResolutionState.DONE, request_id, zip_code)
        self._audit(
            zip_code, request_id, elapsed,
            cache_hit=True,
            chosen_source=value.data_source,
            confidence=value.confidence,
        )
        logger.debug("Cache hit", extra={"zip_code": zip_code, "request_id": request_id, "cache_hit": True})
        return ResolutionSuccess(result=value, cached=True, processing_time_ms=elapsed)

    def _locate_fallback(self, zip_code: str, now) -> Optional[ResolutionResult]:
        try:
            result = self.fallback.locate(zip_code, now)
        except PersistenceError as e:
            logger.warning("Fallback lookup failed", extra={"zip_code": zip_code, "error": str(e)})
            return None
        if result is not None:
            logger.info(f"No provider answered, using nearest neighbor at {result.confidence}",
                        extra={"zip_code": zip_code, "source": result.data_source})
        return result

    def _not_found(
        self,
        zip_code: str,
        queried: Tuple[str, ...],
        source_errors: Dict[str, str],
        request_id: str,
        start: float,
    ) -> ResolutionFailure:
        try:
            miss = self.fallback.explain_miss(zip_code)
            suggestions, classification = miss.suggestions, miss.classification
        except PersistenceError as e:
            logger.warning("Suggestion lookup failed", extra={"zip_code": zip_code, "error": str(e)})
            suggestions, classification = (), classify_territory(zip_code)

        if classification in ("municipal", "cooperative"):
            message = f"ZIP code {zip_code} is served by a {classification} utility and is not in deregulated territory"
        else:
            message = f"No service territory found for ZIP code {zip_code}"

        self.cache.put_failure(FailureMarker(
            zip_code=zip_code,
            error_code=NOT_FOUND,
            message=message,
            suggestions=suggestions,
            classification=classification,
        ))

        failure = ResolutionFailure(
            zip_code=zip_code,
            error_code=NOT_FOUND,
            message=message,
            processing_time_ms=_elapsed_ms(start),
            suggestions=suggestions,
            classification=classification,
        )
        self._enter(ResolutionState.FAILED, request_id, zip_code)
        self._audit(
            zip_code, request_id, failure.processing_time_ms,
            sources_queried=queried,
            error_code=NOT_FOUND,
            source_errors=source_errors,
        )
        logger.info(message, extra={"zip_code": zip_code, "request_id": request_id, "error_code": NOT_FOUND})
        return failure

    # ------------------------------------------------------------------
    # Provider fan-out
    # ------------------------------------------------------------------

    def _query_parallel(
        self,
        clients: Sequence[ProviderClient],
        zip_code: str,
        deadline_at: float,
        request_id: str,
    ) -> Tuple[List[CandidateAnswer], Dict[str, str]]:
        """
        Query providers in parallel.

        Waits no longer than the slowest client's retry budget or the
        request deadline, whichever comes first. Answers that arrived in
        time are kept; the rest are recorded as timeouts.

        Returns:
            (candidates, {provider: error kind value})
        """
        candidates: List[CandidateAnswer] = []
        errors: Dict[str, str] = {}
        if not clients:
            return candidates, errors

        futures = {
            self.executor.submit(self._safe_query, client, zip_code, deadline_at, request_id): client
            for client in clients
        }

        budget = max(self._client_budget(c) for c in clients)
        join_timeout = max(0.0, min(deadline_at - time.monotonic(), budget))
        done, not_done = wait(futures, timeout=join_timeout)

        for future in not_done:
            client = futures[future]
            future.cancel()
            errors[client.name] = ProviderErrorKind.TIMEOUT.value
            logger.warning(f"{client.name} did not answer before the deadline",
                           extra={"zip_code": zip_code, "request_id": request_id, "source": client.name})

        for future in done:
            client = futures[future]
            answer, error = future.result()
            if answer is not None:
                candidates.append(answer)
            else:
                errors[client.name] = error.value

        return candidates, errors

    def _client_budget(self, client: ProviderClient) -> float:
        policy = self.retry_policies.for_provider(client.name)
        delays = sum(policy.delay_for(attempt) for attempt in range(1, policy.max_attempts))
        return client.timeout * policy.max_attempts + delays

    def _safe_query(
        self,
        client: ProviderClient,
        zip_code: str,
        deadline_at: float,
        request_id: str,
    ) -> Tuple[Optional[CandidateAnswer], Optional[ProviderErrorKind]]:
        """Query one provider under the retry policy, absorbing its errors."""
        policy = self.retry_policies.for_provider(client.name)

        def on_retry(attempt, error, delay):
            logger.info(f"Retrying {client.name} after {error.kind.value} (attempt {attempt}, {delay:.2f}s)",
                        extra={"zip_code": zip_code, "request_id": request_id, "source": client.name})

        try:
            answer = call_with_retry(
                client.name,
                lambda remaining: client.validate(zip_code, timeout=remaining),
                policy,
                deadline_at,
                sleep=self.sleep,
                on_retry=on_retry,
            )
            return answer, None
        except ProviderError as e:
            extra = {"zip_code": zip_code, "request_id": request_id, "source": client.name, "error": str(e)}
            if e.kind == ProviderErrorKind.NOT_COVERED:
                logger.debug(f"{client.name} does not cover ZIP", extra=extra)
            else:
                logger.warning(f"{client.name} failed: {e.kind.value}", extra=extra)
            return None, e.kind
        except Exception as e:
            logger.exception(f"{client.name} raised unexpectedly",
                             extra={"zip_code": zip_code, "request_id": request_id, "source": client.name})
            return None, ProviderErrorKind.UNREACHABLE

    # ------------------------------------------------------------------
    # Bulk resolution
    # ------------------------------------------------------------------

    def resolve_bulk(
        self,
        zip_codes: Sequence[Any],
        options: Optional[ResolveOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        batch_delay: Optional[float] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> BulkResult:
        """
        Resolve many ZIP codes in fixed-size batches.

        Each batch runs on a bounded worker pool; the coordinator sleeps
        between batches. Setting cancel_event stops before the next batch;
        items never started come back as CANCELLED failures. One item's
        failure never aborts the rest.

        Args:
            zip_codes: ZIPs to resolve, in order
            options: Applied to every item (force_refresh, deadline)
            cancel_event: Cooperative cancellation flag
            batch_size: Items per batch (default from config)
            concurrency: Worker pool size (default from config)
            batch_delay: Seconds between batches (default from config)
            progress_callback: Called with (completed, total) after each batch

        Returns:
            BulkResult with one outcome per input, in input order
        """
        options = options or ResolveOptions()
        batch_size = max(1, batch_size or self.config.bulk_batch_size)
        concurrency = max(1, concurrency or self.config.bulk_concurrency)
        batch_delay = self.config.bulk_batch_delay if batch_delay is None else batch_delay
        bulk_id = options.request_id or uuid.uuid4().hex[:8]

        start = time.monotonic()
        total = len(zip_codes)
        results: List[Optional[ResolutionOutcome]] = [None] * total
        cancelled = False

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="bulk") as pool:
            for batch_start in range(0, total, batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break

                if batch_start > 0 and batch_delay > 0:
                    if cancel_event is not None:
                        if cancel_event.wait(batch_delay):
                            cancelled = True
                            break
                    else:
                        self.sleep(batch_delay)

                indices = range(batch_start, min(batch_start + batch_size, total))
                futures = {
                    pool.submit(
                        self.resolve,
                        zip_codes[i],
                        ResolveOptions(
                            force_refresh=options.force_refresh,
                            deadline=options.deadline,
                            request_id=f"{bulk_id}-{i}",
                        ),
                    ): i
                    for i in indices
                }
                for future in as_completed(futures):
                    i = futures[future]
                    try:
                        results[i] = future.result()
                    except Exception as e:
                        logger.exception("Bulk item failed unexpectedly", extra={"error": str(e)})
                        results[i] = ResolutionFailure(
                            zip_code=str(zip_codes[i]),
                            error_code=ROUTING_ERROR,
                            message="Unexpected error while resolving ZIP code",
                        )

                if progress_callback:
                    progress_callback(indices.stop, total)

        outcomes: List[ResolutionOutcome] = [
            r if r is not None else ResolutionFailure(
                zip_code=str(zip_codes[i]),
                error_code=CANCELLED,
                message="Bulk resolution cancelled before this item ran",
            )
            for i, r in enumerate(results)
        ]

        confidences = [o.result.confidence for o in outcomes if o.ok]
        summary = BulkSummary(
            total_requested=total,
            success_count=len(confidences),
            failure_count=total - len(confidences),
            average_confidence=round(sum(confidences) / len(confidences), 2) if confidences else 0.0,
            total_processing_time_ms=_elapsed_ms(start),
        )
        logger.info(
            f"Bulk resolution finished: {summary.success_count}/{total} succeeded"
            + (" (cancelled)" if cancelled else ""),
            extra={"request_id": bulk_id, "duration_ms": summary.total_processing_time_ms},
        )
        return BulkResult(results=outcomes, summary=summary, cancelled=cancelled)

    # ------------------------------------------------------------------
    # Metrics, health, persistence
    # ------------------------------------------------------------------

    def get_metrics(self):
        """Rolling-window ServiceMetrics computed from audit entries."""
        return self.metrics.get_service_metrics()

    def health(self) -> Dict[str, Any]:
        providers = self.factory.health()
        try:
            self.store.find_by_prefix(str(self.config.region_min)[:1], limit=1)
            store_status = "healthy"
        except PersistenceError as e:
            logger.warning("Store health check failed", extra={"error": str(e)})
            store_status = "unhealthy"

        status = providers["status"]
        if store_status != "healthy" and status == "healthy":
            status = "degraded"

        return {
            "status": status,
            "store": store_status,
            "cacheEntries": self.cache.size(),
            "providers": providers["clients"],
        }

    def _persist(self, result: ResolutionResult):
        """Upsert, then cache. A store failure never fails the request."""
        try:
            self.store.upsert(result)
        except PersistenceError as e:
            logger.warning("Failed to persist resolution, write dropped",
                           extra={"zip_code": result.zip_code, "error": str(e)})
        self.cache.put(result)

    def _audit(
        self,
        zip_code: str,
        request_id: str,
        processing_time_ms: int,
        sources_queried: Tuple[str, ...] = (),
        chosen_source: Optional[str] = None,
        cache_hit: bool = False,
        error_code: Optional[str] = None,
        confidence: Optional[int] = None,
        source_errors: Optional[Dict[str, str]] = None,
    ):
        entry = AuditLogEntry(
            zip_code=zip_code,
            request_id=request_id,
            sources_queried=tuple(sources_queried),
            chosen_source=chosen_source,
            cache_hit=cache_hit,
            processing_time_ms=processing_time_ms,
            validated_at=self.clock(),
            error_code=error_code,
            confidence=confidence,
            source_errors=dict(source_errors or {}),
        )
        try:
            self.store.append_audit(entry)
        except PersistenceError as e:
            logger.warning("Failed to write audit entry",
                           extra={"zip_code": zip_code, "request_id": request_id, "error": str(e)})
        self.metrics.record(entry)

    def _enter(self, state: ResolutionState, request_id: str, zip_code: Any):
        logger.debug(f"-> {state.value}", extra={"zip_code": str(zip_code)[:16], "request_id": request_id})

    def close(self):
        self.executor.shutdown(wait=False)
        self.store.close()
