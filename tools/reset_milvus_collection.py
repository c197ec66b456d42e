from __future__ import annotations

"""CLI utility to drop and recreate the Milvus chunk collection."""

import argparse

from src.app.settings import settings


def main() -> None:
    """Reset the configured Milvus collection and clear caches that reference it."""
    parser = argparse.ArgumentParser(description="Drop and recreate the Milvus chunk collection.")
    parser.add_argument(
        "--collection",
        default=settings.milvus_collection,
        help="Collection name to reset.",
    )
    parser.add_argument(
        "--keep-cache",
        action="store_true",
        help="Leave cached query results and chunk sets in place.",
    )
    args = parser.parse_args()

    try:
        from pymilvus import connections, utility
    except ImportError as exc:
        raise SystemExit("pymilvus is required to reset the collection") from exc

    connections.connect(alias="default", uri=settings.milvus_uri, token=settings.milvus_token)

    if utility.has_collection(args.collection):
        print(f"Dropping collection: {args.collection}")
        utility.drop_collection(args.collection)

    from src.app.dependencies import get_cache, get_vectorstore, reset_service_cache

    reset_service_cache()
    _ = get_vectorstore()  # creates the collection and its index
    print(f"Recreated collection: {args.collection}")
    if not args.keep_cache:
        cleared = get_cache().invalidate("query")
        cleared.update(get_cache().invalidate("chunks"))
        print(f"Cleared cache entries: {sum(cleared.values())}")


if __name__ == "__main__":
    main()
