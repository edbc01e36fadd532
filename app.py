# app.py
import asyncio
import io
import logging
import os
import zipfile
from pathlib import Path

import httpx
from flask import Flask, abort, jsonify, request, send_file
from flask_login import LoginManager, UserMixin, current_user, login_required

from config import BASE_DIR, Config
from file_service import FileService
from models import (
    Base, DocumentInput, InvalidDocument, PurchaseOrderPdf,
    find_stored_pdf, make_engine, make_session_factory,
)
from po_pdf_service import generate_and_store_pdf, generate_po_pdf, po_pdf_filename

logger = logging.getLogger(__name__)

login_manager = LoginManager()


# -----------------------------
# Flask-Login bearer-token wrapper
# -----------------------------
class ApiUser(UserMixin):
    """
    The caller of the upstream ERP API. The token is not validated here; it is
    forwarded to the file service, which accepts or rejects it.
    """

    def __init__(self, token: str):
        self.id = token
        self.token = token


@login_manager.request_loader
def load_user_from_request(req):
    header = (req.headers.get("Authorization") or "").strip()
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return ApiUser(token.strip())


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Missing or malformed bearer token."}), 401


# -----------------------------
# Helpers
# -----------------------------
def _ensure_dirs():
    (BASE_DIR / "instance").mkdir(parents=True, exist_ok=True)
    Path(Config.EXPORTS_DIR).mkdir(parents=True, exist_ok=True)


def _document_from_request() -> DocumentInput:
    payload = request.get_json(silent=True)
    return DocumentInput.from_dict(payload)


# -----------------------------
# App factory
# -----------------------------
def create_app(transport: httpx.AsyncBaseTransport | None = None):
    """
    transport: optional httpx transport for the file service (tests pass a
    MockTransport here).
    """
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _ensure_dirs()

    app = Flask(__name__)
    app.config.from_object(Config)

    login_manager.init_app(app)

    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)

    SessionLocal = make_session_factory(engine)

    def db_session():
        return SessionLocal()

    def file_service(token: str) -> FileService:
        return FileService(token=token, transport=transport)

    async def _render(document: DocumentInput, token: str) -> bytes:
        async with file_service(token) as files:
            return await generate_po_pdf(document, files)

    async def _store(session, document: DocumentInput, token: str) -> str:
        async with file_service(token) as files:
            return await generate_and_store_pdf(session, document, files)

    @app.errorhandler(InvalidDocument)
    def bad_document(e):
        return jsonify({"error": str(e)}), 400

    # -----------------------------
    # Render routes
    # -----------------------------
    @app.route("/purchase-orders/pdf/preview", methods=["POST"])
    @login_required
    def po_pdf_preview():
        document = _document_from_request()
        data = asyncio.run(_render(document, current_user.token))
        return send_file(
            io.BytesIO(data),
            as_attachment=False,
            download_name=po_pdf_filename(document.purchase_order),
            mimetype="application/pdf",
        )

    @app.route("/purchase-orders/pdf/download", methods=["POST"])
    @login_required
    def po_pdf_download():
        document = _document_from_request()
        data = asyncio.run(_render(document, current_user.token))
        return send_file(
            io.BytesIO(data),
            as_attachment=True,
            download_name=po_pdf_filename(document.purchase_order),
            mimetype="application/pdf",
        )

    # -----------------------------
    # Stored PDFs
    # -----------------------------
    @app.route("/purchase-orders/pdf/generate", methods=["POST"])
    @login_required
    def po_pdf_generate():
        document = _document_from_request()
        with db_session() as s:
            pdf_path = asyncio.run(_store(s, document, current_user.token))
            record = find_stored_pdf(s, document.purchase_order.po_number)
            return jsonify({
                "poNumber": record.po_number,
                "pdfPath": pdf_path,
                "pageCount": record.page_count,
                "generatedAt": record.generated_at.isoformat(),
            }), 201

    @app.route("/purchase-orders/<po_number>/pdf")
    @login_required
    def po_pdf_stored(po_number):
        with db_session() as s:
            record = find_stored_pdf(s, po_number)
            if not record or not os.path.exists(record.pdf_path):
                abort(404)
            return send_file(
                record.pdf_path,
                as_attachment=True,
                download_name=os.path.basename(record.pdf_path),
                mimetype="application/pdf",
            )

    @app.route("/purchase-orders/pdfs/download_all")
    @login_required
    def po_pdfs_download_all():
        year = (request.args.get("year") or "").strip()

        with db_session() as s:
            records = s.query(PurchaseOrderPdf).all()

        mem = io.BytesIO()
        with zipfile.ZipFile(mem, "w", zipfile.ZIP_DEFLATED) as z:
            for rec in records:
                if year.isdigit() and len(year) == 4 and Path(rec.pdf_path).parent.name != year:
                    continue
                if rec.pdf_path and os.path.exists(rec.pdf_path):
                    z.write(rec.pdf_path, arcname=os.path.basename(rec.pdf_path))

        mem.seek(0)
        return send_file(mem, as_attachment=True, download_name="purchase_order_pdfs.zip")

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
