#!/usr/bin/env python3
"""Load resource collections through the sync layer and print them as JSON.

Handy for checking that the REST endpoints and identity fields line up with
what the cache expects.  With ``--listen`` the script also holds the push
channel open for a while and reports the collections as they stand after
pushed changes have been merged.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional, Sequence

from clinic_sync.config import get_sync_settings
from clinic_sync.errors import FetchError, TransportError
from clinic_sync.main import build_store
from clinic_sync.observability import configure_logging
from clinic_sync.store import SyncStore


async def collect(
    store: SyncStore,
    kinds: Sequence[str],
    *,
    listen: float = 0.0,
) -> Dict[str, Any]:
    """Load *kinds* into *store* and return their cached contents."""

    errors: Dict[str, str] = {}
    for kind in kinds:
        try:
            await store.load_once(kind)
        except FetchError as exc:
            errors[kind] = str(exc)
    if listen > 0:
        for kind in kinds:
            store.subscribe_to_resource(kind)
        try:
            await store.start()
            await asyncio.sleep(listen)
        except TransportError as exc:
            errors["push"] = str(exc)
        finally:
            await store.stop()
    result: Dict[str, Any] = {
        kind: {
            "items": store.get_collection(kind),
            "loadState": store.load_state(kind).value,
        }
        for kind in kinds
    }
    if errors:
        result["errors"] = errors
    return result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Print the cached collections for one or more resource kinds.",
    )
    parser.add_argument(
        "kinds",
        nargs="*",
        help="Resource kinds to load (default: every known kind)",
    )
    parser.add_argument(
        "--listen",
        type=float,
        default=0.0,
        help="Seconds to keep the push channel open before printing (default: %(default)s)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_sync_settings()
    configure_logging(settings.log_level)
    store = build_store(settings)
    kinds = args.kinds or list(store.catalog.names())
    unknown = [kind for kind in kinds if kind not in store.catalog]
    if unknown:
        print(f"Unknown resource kinds: {', '.join(unknown)}", file=sys.stderr)
        return 2
    try:
        result = asyncio.run(collect(store, kinds, listen=args.listen))
    finally:
        store.close()
        if store.api is not None:
            store.api.close()
    print(json.dumps(result, indent=2, default=str))
    return 1 if "errors" in result else 0


if __name__ == "__main__":
    sys.exit(main())
