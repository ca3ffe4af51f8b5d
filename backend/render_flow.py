"""Two-step render flow used by the external screenshot harness.

Step one (bootstrap) fetches an order and lists its variants so the caller
can discover variant ids. Step two (canvas) fetches the order again, rebuilds
the variants, renders the requested one and reports a data URL or an error.
"""

import concurrent.futures
import logging
from typing import Callable, Dict, List, Optional
from urllib.parse import quote

import requests

from .grid_variants import GridVariant, find_variant, generate_grid_variants
from .variant_renderer import render_variant_to_data_url

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_MS = 30000
RENDER_TIMEOUT_MS = 45000

STATUS_INITIALIZING = "initializing"
STATUS_FETCHING_ORDER = "fetching-order"
STATUS_GENERATING_VARIANTS = "generating-variants"
STATUS_RENDERING = "rendering"
STATUS_COMPLETE = "complete"
RENDER_STATUSES = (
    STATUS_INITIALIZING,
    STATUS_FETCHING_ORDER,
    STATUS_GENERATING_VARIANTS,
    STATUS_RENDERING,
    STATUS_COMPLETE,
)


class RenderFlowError(Exception):
    pass


def build_order_url(api_base: str, order_id: str, token: Optional[str] = None) -> str:
    url = f"{api_base.rstrip('/')}/render/order/{quote(str(order_id), safe='')}"
    if token:
        url = f"{url}?token={quote(str(token), safe='')}"
    return url


def fetch_render_order(
    api_base: str,
    order_id: str,
    token: Optional[str] = None,
    session=None,
    timeout_ms: int = FETCH_TIMEOUT_MS,
    cookies: Optional[Dict[str, str]] = None,
) -> Dict:
    """Fetch the order payload, aborting the whole request after ``timeout_ms``.

    The request runs on a worker thread so the deadline covers connect,
    headers and body together. On expiry the streamed response is closed,
    which unblocks the worker.
    """
    http = session or requests
    url = build_order_url(api_base, order_id, token)
    timeout_seconds = timeout_ms / 1000
    timeout_message = f"Fetch timeout after {timeout_ms // 1000}s"
    opened: List = []

    def fetch() -> Dict:
        response = http.get(url, timeout=timeout_seconds, cookies=cookies, stream=True)
        opened.append(response)
        if not response.ok:
            raise RenderFlowError(
                f"Order fetch failed: {response.status_code} - {response.text}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise RenderFlowError("Order fetch failed: response was not valid JSON") from exc

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(fetch)
        return future.result(timeout=timeout_seconds)
    except concurrent.futures.TimeoutError as exc:
        for response in opened:
            close = getattr(response, "close", None)
            if close is not None:
                close()
        logger.warning("Order fetch for %s exceeded %dms", order_id, timeout_ms)
        raise RenderFlowError(timeout_message) from exc
    except requests.Timeout as exc:
        raise RenderFlowError(timeout_message) from exc
    except requests.RequestException as exc:
        raise RenderFlowError(f"Order fetch failed: {exc}") from exc
    finally:
        executor.shutdown(wait=False)


def load_render_order(
    api_base: str,
    order_id: str,
    token: Optional[str] = None,
    session=None,
    timeout_ms: int = FETCH_TIMEOUT_MS,
    cookies: Optional[Dict[str, str]] = None,
    loader: Optional[Callable[[str, Optional[str]], Dict]] = None,
) -> Dict:
    """Resolve an order through ``loader`` when given, otherwise over HTTP."""
    if loader is not None:
        return loader(order_id, token)
    return fetch_render_order(
        api_base,
        order_id,
        token=token,
        session=session,
        timeout_ms=timeout_ms,
        cookies=cookies,
    )


class BootstrapResult:
    def __init__(self, variants: Optional[List[GridVariant]] = None, error: Optional[str] = None):
        self.variants = variants or []
        self.error = error

    @property
    def ready(self) -> bool:
        return bool(self.variants) and not self.error

    def to_dict(self) -> Dict:
        return {
            "ready": self.ready,
            "error": self.error,
            "variants": [variant.to_dict() for variant in self.variants],
        }


class RenderBootstrap:
    def __init__(
        self,
        api_base: str,
        session=None,
        fetch_timeout_ms: int = FETCH_TIMEOUT_MS,
        order_loader: Optional[Callable[[str, Optional[str]], Dict]] = None,
    ):
        self.api_base = api_base
        self.session = session
        self.fetch_timeout_ms = fetch_timeout_ms
        self.order_loader = order_loader

    def run(self, order_id: Optional[str], token: Optional[str] = None, cookies=None) -> BootstrapResult:
        try:
            if not order_id:
                raise RenderFlowError("Order ID missing")
            order = load_render_order(
                self.api_base,
                order_id,
                token=token,
                session=self.session,
                timeout_ms=self.fetch_timeout_ms,
                cookies=cookies,
                loader=self.order_loader,
            )
            variants = generate_grid_variants(order)
        except (RenderFlowError, ValueError) as exc:
            logger.error("Bootstrap error for order %s: %s", order_id, exc)
            return BootstrapResult(error=str(exc))

        logger.info("Bootstrap for order %s produced %d variants", order_id, len(variants))
        return BootstrapResult(variants=variants)


class RenderCanvasState:
    def __init__(self, order_id: Optional[str], variant_id: Optional[str]):
        self.order_id = order_id
        self.variant_id = variant_id
        self.status = STATUS_INITIALIZING
        self.error: Optional[str] = None
        self.data_url: Optional[str] = None
        self.order: Optional[Dict] = None
        self.variant: Optional[GridVariant] = None

    @property
    def complete(self) -> bool:
        return self.status == STATUS_COMPLETE and self.data_url is not None

    def fail(self, message: str) -> "RenderCanvasState":
        self.error = message or "Unknown error"
        return self


class RenderCanvas:
    """Fetch an order, rebuild its variants and render one of them.

    The order fetch is aborted after ``fetch_timeout_ms``. The render step is
    only waited on for ``render_timeout_ms``; a render still running at that
    point is left to finish on its worker thread and its result is ignored.
    With ``order_loader`` set the order is read in-process instead of over HTTP.
    """

    def __init__(
        self,
        api_base: str,
        session=None,
        executor: Optional[concurrent.futures.Executor] = None,
        renderer: Callable[..., str] = render_variant_to_data_url,
        fetch_timeout_ms: int = FETCH_TIMEOUT_MS,
        render_timeout_ms: int = RENDER_TIMEOUT_MS,
        order_loader: Optional[Callable[[str, Optional[str]], Dict]] = None,
    ):
        self.api_base = api_base
        self.session = session
        self.executor = executor
        self.renderer = renderer
        self.fetch_timeout_ms = fetch_timeout_ms
        self.render_timeout_ms = render_timeout_ms
        self.order_loader = order_loader

    def on_rendered(self, state: RenderCanvasState, variant_id: str, data_url: Optional[str]):
        logger.info("Variant rendered: %s (%s)", variant_id, (data_url or "")[:50])
        if data_url and data_url.startswith("data:image"):
            state.data_url = data_url
            state.status = STATUS_COMPLETE
        else:
            state.fail("Invalid image data URL received")
        return state

    def run(
        self,
        order_id: Optional[str],
        variant_id: Optional[str],
        token: Optional[str] = None,
        cookies=None,
    ) -> RenderCanvasState:
        state = RenderCanvasState(order_id, variant_id)
        if not order_id or not variant_id:
            return state.fail("Order ID or variant ID missing")

        state.status = STATUS_FETCHING_ORDER
        logger.info("Fetching order %s for render", order_id)
        try:
            order = load_render_order(
                self.api_base,
                order_id,
                token=token,
                session=self.session,
                timeout_ms=self.fetch_timeout_ms,
                cookies=cookies,
                loader=self.order_loader,
            )
        except RenderFlowError as exc:
            logger.error("Render fetch error for order %s: %s", order_id, exc)
            return state.fail(str(exc))

        if not isinstance(order, dict) or not order.get("members"):
            return state.fail("Order has no members")

        state.order = order
        state.status = STATUS_GENERATING_VARIANTS
        try:
            variants = generate_grid_variants(order)
        except ValueError as exc:
            return state.fail(str(exc))
        if not variants:
            return state.fail("No variants could be generated")

        variant = find_variant(variants, variant_id)
        if variant is None:
            available = ", ".join(candidate.id for candidate in variants)
            return state.fail(f"Variant {variant_id} not found. Available: {available}")

        state.variant = variant
        state.status = STATUS_RENDERING
        return self.render(state, variant, order)

    def render(self, state: RenderCanvasState, variant: GridVariant, order: Dict) -> RenderCanvasState:
        executor = self.executor or concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(
                self.renderer, variant, order.get("settings"), self.session
            )
            try:
                data_url = future.result(timeout=self.render_timeout_ms / 1000)
            except concurrent.futures.TimeoutError:
                logger.error("Render of %s exceeded %dms", variant.id, self.render_timeout_ms)
                return state.fail(f"Render timeout after {self.render_timeout_ms // 1000}s")
            except Exception as exc:
                logger.exception("Render of %s failed", variant.id)
                return state.fail(str(exc))
        finally:
            if self.executor is None:
                executor.shutdown(wait=False)

        return self.on_rendered(state, variant.id, data_url)
