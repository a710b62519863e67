"""
Seller Report Parser — HTTP API
================================
Flask backend that accepts uploaded report files (CSV or Excel workbook),
runs them through the report parser and returns the dashboard JSON model.

Usage:
    python server.py
    Then POST files to http://localhost:5000/api/parse
"""

import base64
import binascii
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

import config
from report_model import serialize_report
from report_parser import ParseError, parse_report

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# APP SETUP
# ─────────────────────────────────────────────────────────────

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_MB * 1024 * 1024

CORS(app, origins=config.CORS_ORIGINS)


def _decode_upload(fdata):
    """Decode a base64 upload, with or without a data-URL header.

    Returns (bytes, mime type or None). Raises ValueError on bad base64.
    """
    mime = None
    if fdata.startswith("data:") and "," in fdata:
        header, fdata = fdata.split(",", 1)
        mime = header[len("data:"):].split(";", 1)[0] or None
    return base64.b64decode(fdata, validate=True), mime


def _collect_uploads():
    """Gather uploads from a base64 JSON body or a multipart form."""
    files_to_process = []
    errors = []

    if request.is_json:
        data = request.get_json(silent=True)
        entries = data.get("files") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            entries = []
        for f in entries:
            if not isinstance(f, dict):
                errors.append({"file": None, "kind": "transport_error",
                               "error": "Upload entry must be an object with name and data"})
                continue
            fname = f.get("name")
            fdata = f.get("data")
            if not isinstance(fname, str) or not isinstance(fdata, str) or not fname or not fdata:
                continue
            try:
                file_bytes, data_mime = _decode_upload(fdata)
            except (ValueError, binascii.Error) as e:
                errors.append({"file": fname, "kind": "transport_error",
                               "error": f"Could not decode upload: {e}"})
                continue
            files_to_process.append({
                "filename": fname,
                "bytes": file_bytes,
                "mime": f.get("mimeType") if isinstance(f.get("mimeType"), str) else data_mime,
            })

    if not files_to_process and "files" in request.files:
        for f in request.files.getlist("files"):
            if f.filename:
                files_to_process.append({
                    "filename": f.filename,
                    "bytes": f.read(),
                    "mime": f.mimetype,
                })

    return files_to_process, errors


# ─────────────────────────────────────────────────────────────
# ROUTES
# ─────────────────────────────────────────────────────────────

@app.route("/api/health")
def health():
    return jsonify({"status": "ok"})


@app.route("/api/parse", methods=["POST"])
def parse_files():
    """Parse one or more uploaded reports and return their JSON models."""
    files_to_process, errors = _collect_uploads()

    if not files_to_process and not errors:
        return jsonify({"error": "No files provided"}), 400

    results = {}
    for f in files_to_process:
        fname = f["filename"]
        try:
            report = parse_report(
                f["bytes"],
                content_type=f["mime"],
                filename=fname,
                text_density_threshold=config.TEXT_DENSITY_THRESHOLD,
            )
        except ParseError as e:
            logger.warning("Could not parse '%s': %s", fname, e)
            errors.append({"file": fname, "kind": "parse_error", "error": str(e)})
            continue
        results[fname] = serialize_report(report)

    if not results and errors:
        return jsonify({"error": "All files failed to process", "details": errors}), 400

    return jsonify({
        "files": results,
        "errors": errors if errors else None,
    })


# ─────────────────────────────────────────────────────────────
# RUN
# ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    logger.info("Seller report parser listening on http://localhost:%d", config.PORT)
    app.run(host="0.0.0.0", port=config.PORT, debug=config.DEBUG, use_reloader=False)
