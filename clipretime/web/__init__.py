"""Flask application factory for the clipretime job API."""

import tempfile
from pathlib import Path

from flask import Flask, jsonify

DEFAULT_MAX_UPLOAD = 10 * 1024 * 1024 * 1024  # 10 GB


def create_app(work_dir: Path | None = None, max_upload: int = DEFAULT_MAX_UPLOAD) -> Flask:
    """Build the job API. Uploads and retimed outputs live under ``work_dir``."""
    app = Flask(__name__)
    app.config["WORK_DIR"] = Path(work_dir) if work_dir else Path(tempfile.mkdtemp(prefix="clipretime_"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload

    from clipretime.web.routes import bp
    app.register_blueprint(bp)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": error.description or "Not found"}), 404

    @app.errorhandler(413)
    def upload_too_large(error):
        return jsonify({"error": f"Upload exceeds {app.config['MAX_CONTENT_LENGTH']} bytes"}), 413

    return app
