#!/usr/bin/env python3
"""Load provider documents from a JSON file into the Bedboard directory."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

from bedboard.config import get_settings
from bedboard.models import Provider
from bedboard.store import DirectoryStore, build_engine


def load_documents(path: Path) -> List[Dict[str, Any]]:
    """Read a JSON list, or a mapping of id -> document, of providers."""

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        documents = []
        for provider_id, doc in data.items():
            documents.append({"id": provider_id, **doc})
        return documents
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list or an object of provider documents")
    return list(data)


async def seed(database_url: str, documents: List[Dict[str, Any]]) -> int:
    settings = get_settings()
    options = settings.engine_options() if database_url == settings.database_url else {}
    store = DirectoryStore(build_engine(database_url, **options))
    await store.start()
    try:
        for doc in documents:
            await store.put(Provider.model_validate(doc))
    finally:
        await store.close()
    return len(documents)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the Bedboard provider directory from a JSON file.",
    )
    parser.add_argument("source", type=Path, help="JSON file of provider documents")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL (default: BEDBOARD_DATABASE_URL or the per-user SQLite file)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    database_url = args.database_url or get_settings().database_url
    documents = load_documents(args.source)
    count = asyncio.run(seed(database_url, documents))
    print(f"Seeded {count} providers into {database_url}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
