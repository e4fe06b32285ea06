"""
Bulk ingestion of legal documents from a local folder.

Every PDF, DOCX, HTML and TXT file in the folder is extracted, chunked,
embedded and indexed. Titles come from file names; type and category are
shared by the whole batch.

Usage:
    python ingest_legal_docs.py --dir ~/kenya_acts/ --type ACT --category "Acts of Parliament"
    python ingest_legal_docs.py --dir ~/judgments/ --type CASE_LAW --category "High Court" --recursive
"""

import os
import sys
import json
import time
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
    from execution.legal_kb.document_store import DocumentType

    arg_parser = argparse.ArgumentParser(description="Ingest legal documents from a folder")
    arg_parser.add_argument(
        "--dir",
        type=str,
        required=True,
        help="Directory containing PDF/DOCX/HTML/TXT files",
    )
    arg_parser.add_argument(
        "--type",
        type=str,
        default=DocumentType.ACT.value,
        choices=[t.value for t in DocumentType],
        help="Document type for every file in the batch",
    )
    arg_parser.add_argument(
        "--category",
        type=str,
        required=True,
        help="Legal-area label, e.g. 'Land Law'",
    )
    arg_parser.add_argument(
        "--uploaded-by",
        type=str,
        default=None,
        help="Uploader id (default: the crawler service account)",
    )
    arg_parser.add_argument(
        "--recursive",
        action="store_true",
        help="Include files in subdirectories",
    )
    arg_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON",
    )
    args = arg_parser.parse_args()

    input_dir = Path(args.dir).expanduser()
    if not input_dir.is_dir():
        logger.error(f"Directory not found: {input_dir}")
        sys.exit(1)

    from execution.legal_kb.services import build_services

    services = build_services()
    uploaded_by = args.uploaded_by or services.store.ensure_service_account(
        services.crawl_config.service_account_email,
        services.crawl_config.service_account_name,
    )

    start_time = time.time()
    report = services.pipeline.ingest_folder(
        input_dir, args.type, args.category, uploaded_by, recursive=args.recursive
    )
    elapsed = time.time() - start_time
    services.close()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    summary = report.summary
    print("\n" + "=" * 60)
    print("INGESTION COMPLETE")
    print("=" * 60)
    print(f"Files processed: {summary['successful']}/{summary['total']} ({summary['failed']} failed)")
    print(f"Total chunks:    {summary['total_chunks']}")
    print(f"Total vectors:   {summary['total_vectors']}")
    print(f"Time elapsed:    {elapsed:.1f}s")
    for failure in report.failed:
        print(f"  FAILED {failure['filename']}: {failure['error']}")
    print("=" * 60)


if __name__ == "__main__":
    main()
