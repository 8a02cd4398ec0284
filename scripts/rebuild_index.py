#!/usr/bin/env python3
"""
Index Rebuild Utility
Rebuilds the reference vector store and ANN index from the coordinate catalog
and the configured anchor sources. A valid cache is reused unless --force
is given; caches from other build signatures are pruned.
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from geowraith.core.config import get_embedding_extractor, validate_config
from geowraith.core.errors import IndexBuildFailed
from geowraith.core.retrieval import RetrievalEngine
from geowraith.vector.builder import ReferenceIndexBuilder
from geowraith.vector.cache import clear_cache
from geowraith.vector.catalog import generate_lattice, save_catalog


def main(argv=None):
    """Rebuild the reference index."""
    parser = argparse.ArgumentParser(description="Rebuild the GeoWraith reference index")
    parser.add_argument("--regenerate-catalog", type=int, metavar="COUNT",
                        help="write a fresh stratified lattice of COUNT points before building")
    parser.add_argument("--force", action="store_true",
                        help="delete cached stores and ANN files before building")
    args = parser.parse_args(argv)

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        sys.exit(1)

    print("Starting reference index rebuild...")

    extractor = get_embedding_extractor()
    builder = ReferenceIndexBuilder(extractor)

    if args.regenerate_catalog:
        records = generate_lattice(args.regenerate_catalog)
        save_catalog(builder.catalog_path, records)
        print(f"✓ Wrote {len(records)} catalog points to {builder.catalog_path}")

    if args.force:
        removed = clear_cache(builder.cache_dir)
        print(f"✓ Cleared {removed} cached files")

    engine = RetrievalEngine(builder)
    try:
        snapshot = engine.refresh()
    except IndexBuildFailed as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    store = snapshot.store
    print(f"✓ Reference store ready ({store.source}, tier '{store.tier.value}')")
    print(f"Lattice vectors: {store.lattice_count}")
    print(f"Anchor vectors: {store.anchor_count}")
    if store.anchor_count == 0:
        print("WARNING: No image anchors were embedded (lattice-only index)")
    print(f"✓ ANN index {snapshot.index_origin} with {snapshot.index.ntotal} vectors")
    print("Rebuild complete.")


if __name__ == "__main__":
    main()
