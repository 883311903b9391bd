#!/usr/bin/env python3
"""
Ingest endpoint for Nomad moments.

POST /api/moment (multipart/form-data):
  photo     optional, one file
  audio     optional, one file
  location  optional, JSON string ({"lat": .., "lng": .., "time": ..})

Each moment lands in its own folder:
  <UPLOAD_ROOT>/<moment-id>/<photo> <audio> metadata.json
and one line is appended to <UPLOAD_ROOT>/master_log.json.
"""
from flask import Flask, request
from flask_cors import CORS
from pathlib import Path
import datetime as dt
import argparse
import json
import os
import random
import threading
import time

# ----------------- Config -----------------

UPLOAD_ROOT = Path(os.environ.get("UPLOAD_ROOT", Path(__file__).resolve().parent / "uploads"))
BIND_HOST = os.environ.get("BIND_HOST", "0.0.0.0")
LISTEN_PORT = int(os.environ.get("UPLOAD_PORT", "3000"))

FILE_FIELDS = ("photo", "audio")
METADATA_NAME = "metadata.json"
MASTER_LOG_NAME = "master_log.json"

app = Flask(__name__)
# Access-Control-Allow-Origin: * on every response, preflight included
CORS(app, send_wildcard=True)

# serializes master log appends within this process
_log_lock = threading.Lock()


# ----------------- Helpers -----------------

def new_moment_id() -> str:
    return f"moment-{int(time.time() * 1000)}-{round(random.random() * 1e9)}"


def iso_now() -> str:
    # same shape as JS toISOString(): 2024-05-01T12:00:00.123Z
    now = dt.datetime.now(dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _pick_files(files):
    """
    Return {"photo": FileStorage|None, "audio": FileStorage|None}.
    Raises ValueError on unknown file fields or more than one file per field.
    """
    picked = {name: None for name in FILE_FIELDS}
    for field in files.keys():
        if field not in FILE_FIELDS:
            raise ValueError(f"Unexpected field: {field}")
        items = files.getlist(field)
        if len(items) > 1:
            raise ValueError(f"Too many files for field: {field}")
        picked[field] = items[0] if items else None
    return picked


def _stored_name(field: str, f) -> str:
    # keep the client name, minus any directory part
    name = os.path.basename((f.filename or "").replace("\\", "/"))
    if name in ("", ".", ".."):
        return field
    return name


def _write_json_once(path: Path, obj: dict):
    tmp = str(path) + ".tmp"
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(obj, fh, ensure_ascii=False, indent=2)
    os.replace(tmp, path)


def append_master_log(root: Path, moment_id: str, timestamp: str):
    # one object per line with a trailing comma; the file is an index, not a JSON document
    line = json.dumps({"id": moment_id, "time": timestamp}) + ",\n"
    with _log_lock:
        with open(root / MASTER_LOG_NAME, "a", encoding="utf-8") as fh:
            fh.write(line)


def store_moment(root: Path, moment_id: str, files, location_raw: str | None) -> dict:
    """
    Persist one moment and return its metadata.
    Location is parsed before anything touches the disk, so a malformed
    location leaves no folder behind.
    """
    picked = _pick_files(files)
    location = json.loads(location_raw or "{}")
    print(f"[moment_receiver] location: {location}")

    moment_dir = ensure_dir(root / moment_id)

    stored = {}
    for field in FILE_FIELDS:
        f = picked[field]
        if f is None:
            stored[field] = None
            continue
        name = _stored_name(field, f)
        f.save(moment_dir / name)
        stored[field] = name
        print(f"[moment_receiver] {field} saved: {moment_dir / name}")

    meta = {
        "id": moment_id,
        "timestamp": iso_now(),
        "location": location,
        "files": stored,
    }
    _write_json_once(moment_dir / METADATA_NAME, meta)
    append_master_log(root, moment_id, meta["timestamp"])
    return meta


# ----------------- Routes -----------------

@app.get("/")
def index():
    return "Nomad Backend is Running", 200, {"Content-Type": "text/plain; charset=utf-8"}


@app.get("/health")
def health():
    return {"status": "ok", "upload_root": str(UPLOAD_ROOT)}


@app.post("/api/moment")
def moment():
    moment_id = new_moment_id()
    try:
        print(f"[moment_receiver] received moment {moment_id}")
        root = ensure_dir(Path(UPLOAD_ROOT))
        store_moment(root, moment_id, request.files, request.form.get("location"))
        return {"success": True, "message": "Moment Captured Successfully"}, 200
    except Exception as e:
        print(f"[moment_receiver][error] {moment_id}: {e}")
        return {"success": False, "error": str(e)}, 500


# ----------------- Main -----------------

def main():
    global UPLOAD_ROOT

    ap = argparse.ArgumentParser(description="Nomad moment ingest server")
    ap.add_argument("--bind", default=BIND_HOST)
    ap.add_argument("--port", type=int, default=LISTEN_PORT)
    ap.add_argument("--upload-root", default=str(UPLOAD_ROOT),
                    help="Folder that receives one sub-folder per moment")
    args = ap.parse_args()

    UPLOAD_ROOT = ensure_dir(Path(args.upload_root))
    print(f"[moment_receiver] listening on http://{args.bind}:{args.port}, writing to {UPLOAD_ROOT}")
    app.run(host=args.bind, port=args.port, threaded=True)


if __name__ == "__main__":
    main()
