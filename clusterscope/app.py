"""Application bootstrap for ClusterScope.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → lister → ACP registry
              → watcher → REST

Shutdown stops components in reverse startup order.  Each component's stop
error is caught and logged independently so that one failing teardown does
not keep the others running.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from clusterscope.config import load_config
from clusterscope.models.config import ClusterScopeConfig
from clusterscope.models.state import Cluster
from clusterscope.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from clusterscope.acp.registry import ACPRegistry
    from clusterscope.topology.kube import KubeResourceLister
    from clusterscope.topology.watcher import TopologyWatcher

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class ClusterScopeApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started, or already
    stopped, is safe.
    """

    def __init__(self) -> None:
        self.config: ClusterScopeConfig | None = None

        self._api_client: Any | None = None
        self._lister: KubeResourceLister | None = None
        self._acp_registry: ACPRegistry | None = None
        self._watcher: TopologyWatcher | None = None
        self._rest_server: Any | None = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("clusterscope_starting", version=_clusterscope_version(), cluster_id=self.config.cluster_id)

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Resource lister ------------------------------------------
        await self._start_lister()

        # --- 5. Access control policy registry ---------------------------
        await self._start_acp_registry()

        # --- 6. Topology watcher -----------------------------------------
        await self._start_watcher()

        # --- 7. REST API -------------------------------------------------
        if self.config.api.enabled:
            await self._start_rest()

        self._running = True
        self._log.info("clusterscope_started", port=self.config.api.port if self.config.api.enabled else None)

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting_k8s_client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s_client_configured", source="incluster")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s_client_configured", source="kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_lister(self) -> None:
        assert self._log is not None
        try:
            from clusterscope.topology.kube import KubeResourceLister

            self._lister = KubeResourceLister(self._api_client)
        except Exception as exc:
            raise _ComponentError("lister", exc) from exc

    async def _start_acp_registry(self) -> None:
        """Create the registry backed by Kubernetes Secrets."""
        assert self._log is not None
        assert self.config is not None
        try:
            from clusterscope.acp.registry import ACPRegistry
            from clusterscope.acp.secrets import KubeSecretStore

            acp = self.config.acp
            self._acp_registry = ACPRegistry(
                store=KubeSecretStore(self._api_client, request_timeout=float(acp.secret_request_timeout_seconds)),
                default_namespace=acp.default_secret_namespace,
                timeout=float(acp.refresh_timeout_seconds),
            )
            self._log.info(
                "acp_registry_started",
                default_secret_namespace=acp.default_secret_namespace,
                refresh_timeout=acp.refresh_timeout_seconds,
            )
        except Exception as exc:
            raise _ComponentError("acp_registry", exc) from exc

    async def _start_watcher(self) -> None:
        """Build the fetcher and start recurring aggregation passes."""
        assert self._log is not None
        assert self.config is not None
        assert self._lister is not None
        try:
            from clusterscope.topology.fetcher import Fetcher
            from clusterscope.topology.watcher import TopologyWatcher

            topology = self.config.topology
            fetcher = Fetcher(
                self._lister,
                cluster_id=self.config.cluster_id,
                api_management=topology.api_management_enabled,
                namespaces=topology.namespaces,
            )
            self._watcher = TopologyWatcher(
                fetcher,
                interval=float(topology.interval_seconds),
                pass_timeout=float(topology.pass_timeout_seconds),
                on_snapshot=self._refresh_policies,
            )
            await self._watcher.start()
            self._log.info(
                "topology_watcher_started",
                interval=topology.interval_seconds,
                namespaces=topology.namespaces or "all",
                api_management=topology.api_management_enabled,
            )
        except Exception as exc:
            raise _ComponentError("watcher", exc) from exc

    async def _refresh_policies(self, cluster: Cluster) -> None:
        """Re-resolve the AccessControlPolicy objects listed by the published pass."""
        if self._acp_registry is None:
            return
        await self._acp_registry.refresh(cluster.policy_sources)

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        assert self._watcher is not None
        self._log.debug("starting_rest_api")
        try:
            import uvicorn  # type: ignore[import-untyped]

            from clusterscope.api import create_app

            fastapi_app = create_app(
                watcher=self._watcher,
                config=self.config,
                acp_registry=self._acp_registry,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest_api_started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("clusterscope_shutting_down")
        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True
        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._rest_server = None

        await self._stop_component("watcher", self._watcher)
        self._watcher = None
        self._acp_registry = None
        self._lister = None
        await self._stop_k8s_client()

        log.info("clusterscope_stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component_stop_timed_out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component_stop_failed", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s_client_close_failed", error=str(exc))
        self._api_client = None


def _clusterscope_version() -> str:
    from clusterscope import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = ClusterScopeApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical("fatal_startup_error", component=exc.component, error=str(exc.cause))
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
