"""
Provider Fallback Chain

Tries an ordered list of external providers for one logical request and
returns the first success. Providers report their outcome explicitly as
Ok(value) or Err(reason); the chain never relies on exceptions for control
flow, though any exception that does escape a provider is recorded as Err.

Usage:
    chain = ProviderChain(cache_store, attempt_timeout=15)
    outcome = chain.run(
        [Provider('google', google_lookup, enabled=True),
         Provider('osm', osm_lookup)],
        'Manhattan, NYC',
        fallback=lambda errors: {'provider': 'mock', 'error': '; '.join(errors)},
        cache_key='geocode_auto_...',
        ttl=86400,
    )
    outcome.value      # result dict
    outcome.degraded   # True when every provider failed
    outcome.cached     # True when served from the cache (provider is the original one)
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from utils.secure_logging import redact_pii

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    """Successful provider result"""
    value: Any


@dataclass(frozen=True)
class Err:
    """Failed provider result with a human-readable reason"""
    reason: str


ProviderResult = Union[Ok, Err]


@dataclass(frozen=True)
class Provider:
    """
    One external backend for a domain operation.

    Attributes:
        name: Identifier used in logs and error summaries
        call: Callable returning Ok or Err
        enabled: Computed once from configuration; disabled providers are skipped
    """
    name: str
    call: Callable[..., ProviderResult]
    enabled: bool = True


@dataclass
class ChainOutcome:
    """Result of running a chain, with the trail of failed attempts."""
    value: Any
    provider: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    degraded: bool = False
    cached: bool = False


class ProviderChain:
    """Sequential provider fallback with per-attempt timeouts and memoization"""

    def __init__(self, cache=None, attempt_timeout: float = 15.0, max_workers: int = 8):
        """
        Initialize provider chain

        Args:
            cache: Optional CacheStore for memoizing successful results
            attempt_timeout: Seconds before a provider attempt counts as failed
            max_workers: Threads available for bounding provider attempts
        """
        self.cache = cache
        self.attempt_timeout = attempt_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='provider')

    def run(self, providers: Sequence[Provider], *args,
            fallback: Callable[[List[str]], Any],
            cache_key: Optional[str] = None,
            ttl: Optional[int] = None,
            **kwargs) -> ChainOutcome:
        """
        Try providers in order until one succeeds.

        Args:
            providers: Providers in priority order
            *args, **kwargs: Passed to every provider call
            fallback: Builds the degraded result from the collected errors
            cache_key: When set, cache is consulted first and successes are stored
            ttl: Seconds to keep a successful result

        Returns:
            ChainOutcome (never raises)
        """
        if cache_key and self.cache is not None:
            cached = self.cache.get(cache_key)
            # Entries are {'provider': name, 'result': value}; anything else is a miss
            if isinstance(cached, dict) and 'result' in cached:
                return ChainOutcome(value=cached['result'], provider=cached.get('provider'), cached=True)

        errors = []
        for provider in providers:
            if not provider.enabled:
                errors.append(f"{provider.name}: not enabled")
                continue

            result = self._attempt(provider, *args, **kwargs)

            if isinstance(result, Ok):
                logger.info(f"Provider {provider.name} succeeded")
                if cache_key and self.cache is not None and ttl:
                    self.cache.set(cache_key, {'provider': provider.name, 'result': result.value}, ttl)
                return ChainOutcome(value=result.value, provider=provider.name, errors=errors)

            logger.warning(redact_pii(f"Provider {provider.name} failed: {result.reason}"))
            errors.append(f"{provider.name}: {result.reason}")

        logger.error(f"All providers failed ({len(errors)} attempted or skipped)")
        return ChainOutcome(value=fallback(errors), errors=errors, degraded=True)

    def gather(self, providers: Sequence[Provider], *args, **kwargs) -> Dict[str, ProviderResult]:
        """
        Call independent providers concurrently.

        One provider failing never hides the results of the others.

        Returns:
            Dict mapping provider name to Ok or Err (disabled providers omitted)
        """
        enabled = [p for p in providers if p.enabled]
        if not enabled:
            return {}

        results = {}
        pool = ThreadPoolExecutor(max_workers=len(enabled), thread_name_prefix='fanout')
        try:
            futures = {p.name: pool.submit(self._guarded_call, p, *args, **kwargs) for p in enabled}
            for name, future in futures.items():
                try:
                    results[name] = future.result(timeout=self.attempt_timeout)
                except FutureTimeoutError:
                    results[name] = Err(f"timed out after {self.attempt_timeout}s")
        finally:
            # Do not wait on attempts that already timed out
            pool.shutdown(wait=False)

        for name, result in results.items():
            if isinstance(result, Err):
                logger.warning(redact_pii(f"Provider {name} failed during fan-out: {result.reason}"))

        return results

    def _attempt(self, provider: Provider, *args, **kwargs) -> ProviderResult:
        """Run one provider call bounded by attempt_timeout."""
        future = self._executor.submit(self._guarded_call, provider, *args, **kwargs)
        try:
            return future.result(timeout=self.attempt_timeout)
        except FutureTimeoutError:
            future.cancel()
            return Err(f"timed out after {self.attempt_timeout}s")

    @staticmethod
    def _guarded_call(provider: Provider, *args, **kwargs) -> ProviderResult:
        try:
            result = provider.call(*args, **kwargs)
        except Exception as e:
            return Err(f"unexpected {type(e).__name__}: {e}")

        if isinstance(result, (Ok, Err)):
            return result
        return Err(f"returned {type(result).__name__} instead of Ok/Err")

    def shutdown(self):
        """Release worker threads."""
        self._executor.shutdown(wait=False)
