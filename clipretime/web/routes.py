"""Job API routes for clipretime."""

import json
import logging
import queue
import subprocess
import threading
import uuid
from pathlib import Path

from flask import (
    Blueprint,
    Response,
    abort,
    current_app,
    jsonify,
    request,
    send_file,
)

from clipretime.engine import process
from clipretime.errors import Cancelled, InvalidConfiguration
from clipretime.manifest import AudioConfig, Manifest, validate_manifest

logger = logging.getLogger(__name__)

bp = Blueprint("web", __name__)

# In-memory job store: job_id -> job dict
_jobs: dict[str, dict] = {}

RESTARTABLE = ("uploaded", "done", "error", "cancelled")


def _job(job_id: str) -> dict:
    job = _jobs.get(job_id)
    if job is None:
        abort(404, description="Job not found")
    return job


@bp.route("/api/upload", methods=["POST"])
def upload():
    if "file" not in request.files:
        return jsonify({"error": "No file provided"}), 400

    upload_file = request.files["file"]
    if not upload_file.filename:
        return jsonify({"error": "Empty filename"}), 400

    job_id = uuid.uuid4().hex[:12]
    job_dir = Path(current_app.config["WORK_DIR"]) / job_id
    job_dir.mkdir(parents=True, exist_ok=True)
    # The retimed output reuses this suffix as its container.
    input_path = job_dir / f"source{Path(upload_file.filename).suffix or '.mp4'}"
    upload_file.save(input_path)
    logger.info("Job %s: received %s", job_id, upload_file.filename)

    _jobs[job_id] = {
        "dir": job_dir,
        "input_path": input_path,
        "filename": upload_file.filename,
        "status": "uploaded",
        "cancel_requested": False,
    }
    return jsonify({"job_id": job_id, "filename": upload_file.filename})


@bp.route("/api/jobs/<job_id>/retime", methods=["POST"])
def start_retime(job_id: str):
    job = _job(job_id)
    if job["status"] not in RESTARTABLE:
        return jsonify({"error": f"Job is already {job['status']}"}), 409

    config = request.get_json(silent=True) or {}
    input_path = job["input_path"]
    output_path = job["dir"] / f"retimed{input_path.suffix}"

    try:
        manifest = validate_manifest(Manifest(
            input=input_path,
            output=output_path,
            duration=float(config.get("duration", 0)),
            frame_rate=float(config.get("frame_rate", 30.0)),
            audio=AudioConfig(smooth=bool(config.get("smooth", True))),
        ))
    except (InvalidConfiguration, TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    progress_queue: queue.Queue = queue.Queue()
    job["progress_queue"] = progress_queue
    job["status"] = "processing"
    job["error"] = None
    job["session"] = None
    job["cancel_requested"] = False

    def run():
        last_sent = -1.0

        def on_progress(value: float, preview) -> None:
            nonlocal last_sent
            if value - last_sent >= 0.001:
                last_sent = value
                progress_queue.put({"stage": "retiming", "progress": round(value, 3)})

        def on_session(session) -> None:
            job["session"] = session
            if job["cancel_requested"]:
                session.cancel()

        try:
            result = process(manifest, on_progress=on_progress, on_session=on_session)
            job["result"] = {
                "output_path": str(result.output_path),
                "duration_original": result.duration_original,
                "duration_final": result.duration_final,
                "time_scale_factor": result.time_scale_factor,
                "video_frames_written": result.video_frames_written,
                "audio_samples_written": result.audio_samples_written,
                "skipped_tracks": result.skipped_tracks,
            }
            job["status"] = "done"
        except Cancelled:
            job["status"] = "cancelled"
        except subprocess.CalledProcessError as e:
            job["status"] = "error"
            stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr or b"").decode(errors="replace")
            job["error"] = f"ffmpeg failed: {stderr[-500:]}" if stderr else str(e)
        except Exception as e:
            logger.exception("Job %s failed", job_id)
            job["status"] = "error"
            job["error"] = str(e)
        finally:
            job["session"] = None
            progress_queue.put(None)  # sentinel

    threading.Thread(target=run, daemon=True).start()
    return jsonify({"status": "started"})


@bp.route("/api/jobs/<job_id>/cancel", methods=["POST"])
def cancel_retime(job_id: str):
    job = _job(job_id)
    if job["status"] != "processing":
        return jsonify({"error": f"Job is {job['status']}"}), 409

    job["cancel_requested"] = True
    session = job.get("session")
    if session is not None:
        session.cancel()
    return jsonify({"status": "cancelling"})


@bp.route("/api/jobs/<job_id>/progress")
def progress_stream(job_id: str):
    job = _job(job_id)
    q = job.get("progress_queue")

    if q is None:
        return jsonify({"error": "No processing in progress"}), 409

    def generate():
        while True:
            try:
                msg = q.get(timeout=120)
            except queue.Empty:
                yield "data: {\"error\": \"timeout\"}\n\n"
                break
            if msg is None:
                if job["status"] == "error":
                    data = json.dumps({"error": job["error"]})
                elif job["status"] == "cancelled":
                    data = json.dumps({"stage": "cancelled"})
                else:
                    data = json.dumps({
                        "stage": "complete",
                        "progress": 1.0,
                        "result": job.get("result"),
                    })
                yield f"data: {data}\n\n"
                break
            yield f"data: {json.dumps(msg)}\n\n"

    return Response(generate(), mimetype="text/event-stream")


@bp.route("/api/jobs/<job_id>/result")
def download_result(job_id: str):
    job = _job(job_id)
    if job["status"] != "done":
        return jsonify({"error": f"Job is {job['status']}, no result to download"}), 409
    return send_file(Path(job["result"]["output_path"]), as_attachment=False)


@bp.route("/api/jobs/<job_id>/status")
def job_status(job_id: str):
    job = _job(job_id)
    status = job["status"]
    resp = {"status": status, "filename": job.get("filename")}
    if status == "processing":
        resp["cancelling"] = job.get("cancel_requested", False)
    elif status == "done":
        resp["result"] = job.get("result")
    elif status == "error":
        resp["error"] = job.get("error")
    elif status == "cancelled":
        resp["detail"] = "retiming was cancelled before the output was finalized"
    return jsonify(resp)
