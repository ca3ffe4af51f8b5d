"""Render every center variant of an order to PNG files.

Usage:
    python -m backend.render_harness ORDER_ID --api-base http://localhost:5000/api \
        --token $RENDER_TOKEN --out ./renders
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

import requests
from dotenv import load_dotenv

from .image_crop import decode_data_url
from .render_flow import FETCH_TIMEOUT_MS, RENDER_TIMEOUT_MS, RenderBootstrap, RenderCanvas

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render center variants for an order.")
    parser.add_argument("order_id")
    parser.add_argument(
        "--api-base",
        default=os.getenv("RENDER_API_BASE", "http://localhost:5000/api"),
    )
    parser.add_argument("--token", default=os.getenv("RENDER_TOKEN"))
    parser.add_argument("--variant", help="Only render this variant id.")
    parser.add_argument("--out", default="renders")
    parser.add_argument("--fetch-timeout-ms", type=int, default=FETCH_TIMEOUT_MS)
    parser.add_argument("--render-timeout-ms", type=int, default=RENDER_TIMEOUT_MS)
    return parser


def write_png(data_url: str, path: str) -> None:
    with open(path, "wb") as handle:
        handle.write(decode_data_url(data_url))


def run(argv: Optional[List[str]] = None, session=None) -> int:
    args = build_parser().parse_args(argv)
    http = session or requests.Session()

    bootstrap = RenderBootstrap(
        args.api_base, session=http, fetch_timeout_ms=args.fetch_timeout_ms
    )
    result = bootstrap.run(args.order_id, token=args.token)
    if result.error:
        print(f"Bootstrap failed: {result.error}", file=sys.stderr)
        return 1

    variant_ids = [variant.id for variant in result.variants]
    if args.variant:
        if args.variant not in variant_ids:
            print(
                f"Variant {args.variant} not found. Available: {', '.join(variant_ids)}",
                file=sys.stderr,
            )
            return 1
        variant_ids = [args.variant]

    os.makedirs(args.out, exist_ok=True)
    canvas = RenderCanvas(
        args.api_base,
        session=http,
        fetch_timeout_ms=args.fetch_timeout_ms,
        render_timeout_ms=args.render_timeout_ms,
    )

    failures = 0
    for variant_id in variant_ids:
        state = canvas.run(args.order_id, variant_id, token=args.token)
        if not state.complete:
            failures += 1
            print(f"{variant_id}: {state.error}", file=sys.stderr)
            continue
        path = os.path.join(args.out, f"{args.order_id}-{variant_id}.png")
        write_png(state.data_url, path)
        print(f"{variant_id}: {path}")

    print(f"Rendered {len(variant_ids) - failures}/{len(variant_ids)} variants")
    return 1 if failures else 0


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(run())


if __name__ == "__main__":
    main()
