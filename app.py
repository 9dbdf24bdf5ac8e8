# !!!
# TO RUN THE SERVER: uvicorn app:app --host 0.0.0.0 --port 8000
# !!!

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from config_app import CONFIG_PATH, LOG_LEVEL, MAX_UPLOAD_BYTES, REQUEST_TIMEOUT_SEC, SNAPSHOT_PATH
from ringabell.errors import DuplicateSongName, IndexCorruption, InvalidAudioFormat, OperationCancelled
from ringabell.log import log_detail, log_section, log_step, log_success, setup_logging
from ringabell.shazam import ShazamRecognizer

setup_logging("ringabell", getattr(logging, LOG_LEVEL.upper(), logging.INFO))
log = logging.getLogger("ringabell.app")


# -----------------------------
# Recognizer loading
# -----------------------------

def load_recognizer(snapshot_path: Optional[Path], config_path: Optional[str] = None) -> ShazamRecognizer:
    log_step(1, "Initializing Shazam recognizer...")
    if snapshot_path is not None and snapshot_path.exists():
        log_detail("Snapshot", str(snapshot_path))
        try:
            recognizer = ShazamRecognizer.from_snapshot(snapshot_path)
        except IndexCorruption as e:
            log.error(f"Error loading snapshot {snapshot_path}: {e}")
            raise
        log_success(f"Loaded {recognizer.num_indexed_songs} songs")
        return recognizer

    recognizer = ShazamRecognizer.from_config(config_path) if config_path else ShazamRecognizer()
    log_success("Starting with an empty index")
    return recognizer


def _read_upload(file: UploadFile) -> bytes:
    content = file.file.read(MAX_UPLOAD_BYTES + 1)
    if not content:
        log.warning("Empty file upload rejected")
        raise HTTPException(status_code=400, detail="Empty upload.")
    if len(content) > MAX_UPLOAD_BYTES:
        log.warning("Upload over %d bytes rejected", MAX_UPLOAD_BYTES)
        raise HTTPException(status_code=413, detail="Upload too large.")
    log_detail("File size", f"{len(content) / 1024:.1f} KB")
    return content


# -----------------------------
# App Initialization
# -----------------------------

def create_app(recognizer: Optional[ShazamRecognizer] = None,
               snapshot_path: Optional[Path] = None) -> FastAPI:
    """
    Build the HTTP adapter around a recognizer.

    When ``snapshot_path`` is set it is loaded at startup (if present) and
    rewritten after every registration.
    """
    log_section("🎵 Ringabell API Server")
    if recognizer is None:
        recognizer = load_recognizer(snapshot_path, CONFIG_PATH)

    app = FastAPI(title="Ringabell API", version="1.0")
    app.state.recognizer = recognizer

    # -----------------------------
    # API endpoints
    # -----------------------------
    @app.get("/health")
    def health() -> Dict[str, Any]:
        log.debug("Health check requested")
        return {"status": "ok", "songs": recognizer.num_indexed_songs}

    @app.get("/songs")
    def songs() -> Dict[str, Any]:
        return {"songs": recognizer.song_names()}

    @app.post("/register")
    def register(
        name: str = Form(...),
        file: UploadFile = File(...),
        sample_rate: Optional[int] = Form(None),
        channels: int = Form(1),
    ) -> JSONResponse:
        log.info(f"🎼 New registration request: '{name}'")
        log_detail("Filename", file.filename or "unknown")
        content = _read_upload(file)

        try:
            song_id = recognizer.register(name, content, sample_rate=sample_rate, channels=channels,
                                          timeout=REQUEST_TIMEOUT_SEC)
        except InvalidAudioFormat as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DuplicateSongName as e:
            raise HTTPException(status_code=409, detail=str(e))
        except OperationCancelled as e:
            raise HTTPException(status_code=504, detail=str(e))

        if snapshot_path is not None:
            snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            recognizer.save(snapshot_path)

        log_success(f"Registered '{name}' (id {song_id})")
        return JSONResponse({"songId": song_id, "songName": name})

    @app.post("/search")
    def search(
        file: UploadFile = File(...),
        sample_rate: Optional[int] = Form(None),
        channels: int = Form(1),
    ) -> JSONResponse:
        log.info("🎧 New recognition request received")
        log_detail("Filename", file.filename or "unknown")
        content = _read_upload(file)

        try:
            result = recognizer.search(content, sample_rate=sample_rate, channels=channels,
                                       timeout=REQUEST_TIMEOUT_SEC)
        except InvalidAudioFormat as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OperationCancelled as e:
            raise HTTPException(status_code=504, detail=str(e))

        if result.found:
            log_success(f"Match found: '{result.song_name}' (score: {result.score:.2%})")
        else:
            log.warning("No match found")

        log.info("✨ Request completed successfully")
        return JSONResponse(result.to_dict())

    log_section("🚀 Server Ready")
    return app


app = create_app(snapshot_path=Path(SNAPSHOT_PATH))
