"""Multi-provider tool catalog and call dispatch."""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import Config, ProviderConfig, load_provider_configs
from .errors import OllamaMcpError, UnknownProvider
from .models import ToolCatalog, ToolInvocationRequest, ToolInvocationResult
from .provider import ProviderConnection, TransportFactory
from .tool_schema import split_qualified

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Owns every configured tool provider for one chat session.

    Handles:
    - Merging provider catalogs into one provider-qualified namespace
    - Caching the merged catalog
    - Routing tool calls to their provider, providers in parallel,
      calls to the same provider in request order
    """

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        timeout: float = 30.0,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.connections: Dict[str, ProviderConnection] = {
            name: ProviderConnection(provider, timeout=timeout, transport_factory=transport_factory)
            for name, provider in providers.items()
        }
        self._catalog: Optional[ToolCatalog] = None
        self._inflight: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, cfg: Config, transport_factory: Optional[TransportFactory] = None) -> "Orchestrator":
        """Build from the persisted provider configuration file."""
        return cls(
            load_provider_configs(cfg.providers_path),
            timeout=cfg.tool_timeout,
            transport_factory=transport_factory,
        )

    @property
    def provider_names(self) -> List[str]:
        return list(self.connections.keys())

    def invalidate(self):
        """Drop the merged catalog and every provider's cached catalog."""
        self._catalog = None
        for connection in self.connections.values():
            connection.invalidate()

    async def get_merged_tool_catalog(
        self,
        use_cache: bool = True,
        providers: Optional[Iterable[str]] = None,
    ) -> ToolCatalog:
        """
        List tools from every provider concurrently and merge them.

        A provider that fails is skipped and reported in ``failures``;
        it never fails the whole catalog. ``providers`` restricts the
        merge to a subset of configured provider names.
        """
        subset = list(dict.fromkeys(providers)) if providers is not None else None
        if use_cache and subset is None and self._catalog is not None:
            return ToolCatalog(tools=list(self._catalog.tools))

        catalog = ToolCatalog()
        names = []
        for name in (subset if subset is not None else self.connections):
            if name in self.connections:
                names.append(name)
            else:
                catalog.failures[name] = UnknownProvider(name).message

        results = await asyncio.gather(
            *(self.connections[name].list_tools(use_cache=use_cache) for name in names),
            return_exceptions=True,
        )

        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                reason = _reason(result)
                logger.warning(f"Skipping provider '{name}' in tool catalog: {reason}")
                catalog.failures[name] = reason
            else:
                catalog.tools.extend(result)

        if subset is None and not catalog.degraded:
            self._catalog = ToolCatalog(tools=list(catalog.tools))

        logger.info(f"Merged tool catalog: {len(catalog.tools)} tools from "
                    f"{len(names) - len(catalog.failures)}/{len(names)} providers")
        return catalog

    async def dispatch_calls(self, requests: List[ToolInvocationRequest]) -> List[ToolInvocationResult]:
        """
        Route each request to its provider and return results in request order.

        Providers run concurrently; calls to one provider run sequentially
        over a single connection. Unresolvable or failed calls produce a
        result with ``error`` set instead of aborting the batch. Calls
        already started run to completion even if the caller is cancelled.
        """
        results: List[Optional[ToolInvocationResult]] = [None] * len(requests)
        groups: Dict[str, List[Tuple[int, str, ToolInvocationRequest]]] = {}

        for index, request in enumerate(requests):
            try:
                provider, tool = split_qualified(request.name, self.connections)
            except UnknownProvider as e:
                logger.warning(e.message)
                results[index] = ToolInvocationResult(
                    request_id=request.request_id,
                    name=request.name,
                    error=e.message,
                )
                continue
            groups.setdefault(provider, []).append((index, tool, request))

        logger.info(f"Dispatching {len(requests)} tool call(s) to {len(groups)} provider(s)")

        if groups:
            tasks = [asyncio.create_task(self._dispatch_group(name, calls)) for name, calls in groups.items()]
            for task in tasks:
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)

            for group in await asyncio.shield(asyncio.gather(*tasks)):
                for index, result in group:
                    results[index] = result

        return [r for r in results if r is not None]

    async def _dispatch_group(
        self,
        name: str,
        calls: List[Tuple[int, str, ToolInvocationRequest]],
    ) -> List[Tuple[int, ToolInvocationResult]]:
        connection = self.connections[name]

        try:
            outcomes: List[Any] = await connection.invoke_tools(
                [(tool, request.arguments) for _, tool, request in calls]
            )
        except Exception as e:
            reason = _reason(e)
            logger.warning(f"Provider '{name}' failed for {len(calls)} call(s): {reason}",
                           exc_info=not isinstance(e, OllamaMcpError))
            outcomes = [e] * len(calls)

        group = []
        for (index, tool, request), outcome in zip(calls, outcomes):
            result = ToolInvocationResult(
                request_id=request.request_id,
                name=request.name,
                provider=name,
                tool=tool,
            )
            if isinstance(outcome, Exception):
                result.error = _reason(outcome)
            else:
                result.content = outcome
            group.append((index, result))
        return group

    async def close(self):
        """Wait for in-flight calls and drop all cached state."""
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight provider call group(s)")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self.invalidate()


def _reason(error: BaseException) -> str:
    if isinstance(error, OllamaMcpError):
        return error.message
    return f"{type(error).__name__}: {error}"
