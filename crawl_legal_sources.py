"""
Legal source crawler.

Discovers judgments, bills and legal resources on the allow-listed Kenyan
publisher sites and ingests them into the knowledge base.

Usage:
    python crawl_legal_sources.py                    # one crawl now
    python crawl_legal_sources.py --max-docs 10 --max-depth 2
    python crawl_legal_sources.py --schedule         # run daily at 17:00 EAT until interrupted
"""

import os
import sys
import json
import time
import argparse
import logging
import dataclasses
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
    parser = argparse.ArgumentParser(description="Crawl Kenyan legal sources")
    parser.add_argument("--max-docs", type=int, default=None, help="Documents to ingest per run")
    parser.add_argument("--max-depth", type=int, default=None, help="Link depth from each seed")
    parser.add_argument("--seed", action="append", default=None,
                        help="Crawl only this seed URL (repeatable)")
    parser.add_argument("--schedule", action="store_true",
                        help="Run the daily scheduler instead of a single crawl")
    args = parser.parse_args()

    from execution.legal_kb.services import build_services

    services = build_services()
    overrides = {}
    if args.max_docs is not None:
        overrides["max_documents_per_run"] = args.max_docs
    if args.max_depth is not None:
        overrides["max_depth"] = args.max_depth
    if args.seed:
        overrides["seed_urls"] = tuple(args.seed)
    if overrides:
        services.crawl_config = dataclasses.replace(services.crawl_config, **overrides)

    if not args.schedule:
        result = services.make_crawler().crawl()
        services.close()
        print(json.dumps(result.to_dict(), indent=2))
        return

    scheduler = services.make_scheduler()
    scheduler.start()
    logger.info(f"Next run: {scheduler.get_next_run_time().isoformat()}")
    try:
        while scheduler.is_running():
            time.sleep(60)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping scheduler...")
    finally:
        scheduler.shutdown()
        services.close()


if __name__ == "__main__":
    main()
