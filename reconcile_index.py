"""
Compare the relational store with the vector index.

Reports document/chunk/vector totals, per-type and per-category counts, and
whether the number of indexed vectors matches the stored vector counts.
With --check-documents each document's chunk rows are also compared with its
recorded counts.

Usage:
    python reconcile_index.py
    python reconcile_index.py --check-documents --limit 500
"""

import os
import sys
import json
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Reconcile document store and vector index")
    parser.add_argument("--check-documents", action="store_true",
                        help="Verify chunk rows against recorded counts per document")
    parser.add_argument("--limit", type=int, default=50, help="Documents to check")
    args = parser.parse_args()

    from execution.legal_kb.services import build_services

    services = build_services()
    stats = services.pipeline.get_stats()
    print(json.dumps(stats, indent=2, default=str))

    mismatched = []
    if args.check_documents:
        for doc in services.pipeline.list_documents(limit=args.limit):
            stored = services.store.count_chunks(doc.id)
            if not (doc.chunks_count == doc.vectors_count == stored):
                mismatched.append(doc.id)
                logger.warning(
                    f"{doc.id} '{doc.title[:50]}': chunks_count={doc.chunks_count} "
                    f"vectors_count={doc.vectors_count} stored_chunks={stored}"
                )
        logger.info(f"Checked documents, {len(mismatched)} inconsistent")

    services.close()
    if not stats["consistent"] or mismatched:
        sys.exit(1)


if __name__ == "__main__":
    main()
