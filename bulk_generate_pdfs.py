# bulk_generate_pdfs.py
import argparse
import asyncio
import json
import logging
import os
from pathlib import Path

from config import Config
from file_service import FileService
from models import Base, DocumentInput, find_stored_pdf, make_engine, make_session_factory
from po_pdf_service import generate_and_store_pdf


def collect_documents(paths) -> list[Path]:
    """*.json files given directly or found (non-recursively) in given directories."""
    found: list[Path] = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            found.extend(sorted(p.glob("*.json")))
        elif p.suffix.lower() == ".json":
            found.append(p)
    return found


def load_document(path: Path) -> DocumentInput:
    with open(path, "r", encoding="utf-8") as fh:
        return DocumentInput.from_dict(json.load(fh))


async def _run(session, files: FileService, documents: list[Path], regenerate: bool, target_year: str) -> dict:
    counts = {"generated": 0, "skipped": 0, "failed": 0}
    total = len(documents)

    for i, path in enumerate(documents, start=1):
        try:
            doc = load_document(path)
            po = doc.purchase_order
            if target_year and not (po.po_date or po.created_date).startswith(target_year):
                counts["skipped"] += 1
                print(f"[{i}/{total}] SKIP  {po.po_number} (not in {target_year})")
                continue

            existing = find_stored_pdf(session, po.po_number)
            has_pdf = existing is not None and os.path.exists(existing.pdf_path or "")
            if has_pdf and not regenerate:
                counts["skipped"] += 1
                print(f"[{i}/{total}] SKIP  {po.po_number} (already has PDF)")
                continue

            out = await generate_and_store_pdf(session, doc, files)
            counts["generated"] += 1
            print(f"[{i}/{total}] DONE  {po.po_number} -> {out}")

        except Exception as e:
            session.rollback()
            counts["failed"] += 1
            print(f"[{i}/{total}] FAIL  {path.name}  ({e})")

    return counts


def main(argv=None):
    parser = argparse.ArgumentParser(description="Bulk generate purchase order PDFs.")
    parser.add_argument("paths", nargs="+", help="Purchase order JSON documents, or directories holding them.")
    parser.add_argument("--year", type=str, default="", help="Only generate PDFs for a given PO year (YYYY).")
    parser.add_argument("--all", action="store_true", help="Regenerate PDFs even if one already exists.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, Config.LOG_LEVEL, logging.INFO))

    target_year = (args.year or "").strip()
    if target_year and not (target_year.isdigit() and len(target_year) == 4):
        raise SystemExit("Year must be 4 digits, e.g. --year 2025")

    # Ensure exports dir exists
    Path(Config.EXPORTS_DIR).mkdir(parents=True, exist_ok=True)

    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    documents = collect_documents(args.paths)
    if not documents:
        print("No purchase order documents found.")
        return

    async def _with_files(session):
        async with FileService() as files:
            return await _run(session, files, documents, args.all, target_year)

    with SessionLocal() as s:
        counts = asyncio.run(_with_files(s))

    print("\nBulk PDF generation complete.")
    print(f"Generated: {counts['generated']}")
    print(f"Skipped:   {counts['skipped']}")
    print(f"Failed:    {counts['failed']}")
    print(f"Exports:   {Config.EXPORTS_DIR}")


if __name__ == "__main__":
    main()
