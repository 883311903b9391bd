#!/usr/bin/env python3
"""
Ghost capture: one photo, a short audio clip and a location fix, uploaded
together to the moment receiver.

Sequence:
  media access (fatal on failure)
  location lookup on a side thread
  wait for video (<= ready_timeout), settle, mirrored JPEG snapshot
  audio snippet (empty clip on any recorder trouble)
  join location, multipart POST /api/moment (failures logged, not raised)

Example:
  ghost_capture.py --server-url http://192.168.1.20:3000 --lat 32.08 --lng 34.78
"""

import argparse
import io
import json
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

import cv2
import numpy as np
import requests

from media_devices import CameraMicrophone, FixedGeolocation, GeoReading, MediaAccessError

READY_TIMEOUT_SEC = 3.0
SETTLE_DELAY_SEC = 1.0
AUDIO_DURATION_SEC = 5.0
JPEG_QUALITY = 80
FALLBACK_SIZE = (640, 480)
DEFAULT_AUDIO_MIME = "audio/wav"

PHOTO_FILENAME = "auto_capture.jpg"
AUDIO_BASENAME = "auto_capture"


@dataclass
class AudioClip:
    data: bytes = b""
    mime_type: str = DEFAULT_AUDIO_MIME

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.mime_type.split(";")[0].split("/")[-1] or "bin"


@dataclass
class CaptureRequest:
    photo: bytes
    audio: AudioClip
    location: Optional[GeoReading] = None

    def location_dict(self) -> dict:
        return self.location.to_dict() if self.location else {}


@dataclass
class UploadOutcome:
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CaptureResult:
    """success: the sequence ran to the end; delivered: the server confirmed it."""
    success: bool
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    moment: Optional[CaptureRequest] = field(default=None, repr=False)


def snapshot_jpeg(frame, quality: int = JPEG_QUALITY) -> bytes:
    """Mirror the frame horizontally (what the user saw) and encode as JPEG."""
    if frame is None:
        w, h = FALLBACK_SIZE
        frame = np.zeros((h, w, 3), dtype=np.uint8)
    mirrored = cv2.flip(frame, 1)
    ok, jpg = cv2.imencode(".jpg", mirrored, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise RuntimeError("cv2.imencode failed")
    return jpg.tobytes()


def record_audio_snippet(stream, duration: float, sleep=time.sleep) -> AudioClip:
    """Never raises: any recorder problem yields an empty clip."""
    try:
        if not stream.audio_tracks():
            print("[ghost_capture][audio] no audio tracks found on stream")
            return AudioClip()
        recorder = stream.create_recorder()
    except Exception as e:
        print(f"[ghost_capture][audio] recorder setup error: {e}")
        return AudioClip()

    mime = getattr(recorder, "mime_type", None) or DEFAULT_AUDIO_MIME
    try:
        try:
            recorder.start()
        except Exception as e:
            print(f"[ghost_capture][audio] failed to start recorder: {e}")
            return AudioClip(b"", mime)

        sleep(duration)

        if recorder.state != "recording":
            print("[ghost_capture][audio] recorder stopped early")
            return AudioClip(b"", mime)
        try:
            data = recorder.stop()
        except Exception as e:
            print(f"[ghost_capture][audio] recorder error: {e}")
            return AudioClip(b"", mime)
        return AudioClip(data or b"", mime)
    finally:
        _close_recorder(recorder)


def _close_recorder(recorder):
    close = getattr(recorder, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        print(f"[ghost_capture][audio] recorder close failed: {e}")


class MomentUploader:
    def __init__(self, server_url: str, session=None, timeout: float = 60.0):
        self.url = server_url.rstrip("/") + "/api/moment"
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, moment: CaptureRequest) -> UploadOutcome:
        files = {
            "photo": (PHOTO_FILENAME, io.BytesIO(moment.photo), "image/jpeg"),
            "audio": (f"{AUDIO_BASENAME}.{moment.audio.extension}",
                      io.BytesIO(moment.audio.data), moment.audio.mime_type),
        }
        data = {"location": json.dumps(moment.location_dict())}
        print(f"[ghost_capture][upload] POST {self.url} location={data['location']} "
              f"photo={len(moment.photo)}B audio={moment.audio.size}B")

        try:
            r = self.session.post(self.url, files=files, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            print(f"[ghost_capture][upload] backend not reachable: {e}")
            return UploadOutcome(False, None, str(e))

        if not r.ok:
            print(f"[ghost_capture][upload] status={r.status_code} body={r.text}")
            return UploadOutcome(False, r.status_code, r.text)
        return UploadOutcome(True, r.status_code)


class CaptureSequencer:
    def __init__(self, media, uploader, geolocation=None,
                 ready_timeout: float = READY_TIMEOUT_SEC,
                 settle_delay: float = SETTLE_DELAY_SEC,
                 audio_duration: float = AUDIO_DURATION_SEC,
                 jpeg_quality: int = JPEG_QUALITY,
                 sleep=time.sleep):
        self.media = media
        self.uploader = uploader
        self.geolocation = geolocation
        self.ready_timeout = ready_timeout
        self.settle_delay = settle_delay
        self.audio_duration = audio_duration
        self.jpeg_quality = jpeg_quality
        self.sleep = sleep
        self.lock = threading.Lock()
        self.stream = None

    def get_stream(self):
        return self.stream

    def close(self):
        if self.stream is not None:
            try:
                self.stream.stop()
            finally:
                self.stream = None

    def _start_location_lookup(self):
        box = {"reading": None}

        def run():
            if self.geolocation is None:
                return
            try:
                box["reading"] = self.geolocation.get_current_position()
            except Exception as e:
                print(f"[ghost_capture][geo] lookup failed: {e}")

        t = threading.Thread(target=run, daemon=True)
        t.start()
        return t, box

    def _wait_video(self, stream):
        try:
            ready = stream.wait_ready(self.ready_timeout)
        except Exception as e:
            print(f"[ghost_capture][video] readiness check failed: {e}")
            ready = False
        if not ready:
            print(f"[ghost_capture][video] not ready after {self.ready_timeout}s, continuing")

    def trigger_capture_sequence(self) -> CaptureResult:
        with self.lock:
            self.close()
            try:
                stream = self.media.get_user_media(video=True, audio=True)
            except Exception as e:
                print(f"[ghost_capture][error] media access: {e}")
                if isinstance(e, MediaAccessError):
                    raise
                raise MediaAccessError(str(e)) from e
            self.stream = stream

            geo_thread, geo_box = self._start_location_lookup()

            self._wait_video(stream)
            # let auto exposure / focus settle
            self.sleep(self.settle_delay)

            photo = snapshot_jpeg(stream.read_frame(), self.jpeg_quality)
            audio = record_audio_snippet(stream, self.audio_duration, self.sleep)

            geo_thread.join()
            moment = CaptureRequest(photo=photo, audio=audio, location=geo_box["reading"])

            outcome = self.uploader.send(moment)
            return CaptureResult(
                success=True,
                delivered=outcome.delivered,
                status_code=outcome.status_code,
                error=outcome.error,
                moment=moment,
            )


def main():
    ap = argparse.ArgumentParser(description="Capture photo + audio + location and upload as one moment")
    ap.add_argument("--server-url", default=os.environ.get("NOMAD_URL", "http://127.0.0.1:3000"),
                    help="Moment receiver base URL")
    ap.add_argument("--camera", type=int, default=int(os.environ.get("CAMERA_INDEX", "0")))
    ap.add_argument("--audio-device", default=None, help="sounddevice input device (name or index)")
    ap.add_argument("--samplerate", type=int, default=44100)
    ap.add_argument("--lat", type=float, default=None)
    ap.add_argument("--lng", type=float, default=None)
    ap.add_argument("--ready-timeout", type=float, default=READY_TIMEOUT_SEC)
    ap.add_argument("--settle", type=float, default=SETTLE_DELAY_SEC)
    ap.add_argument("--audio-seconds", type=float, default=AUDIO_DURATION_SEC)
    ap.add_argument("--quality", type=int, default=JPEG_QUALITY)
    args = ap.parse_args()

    audio_device = args.audio_device
    if audio_device is not None and audio_device.isdigit():
        audio_device = int(audio_device)

    geo = None
    if args.lat is not None and args.lng is not None:
        geo = FixedGeolocation(args.lat, args.lng)

    seq = CaptureSequencer(
        CameraMicrophone(args.camera, audio_device=audio_device, samplerate=args.samplerate),
        MomentUploader(args.server_url),
        geolocation=geo,
        ready_timeout=args.ready_timeout,
        settle_delay=args.settle,
        audio_duration=args.audio_seconds,
        jpeg_quality=args.quality,
    )
    try:
        result = seq.trigger_capture_sequence()
    except MediaAccessError as e:
        raise SystemExit(f"[ghost_capture] ERROR: camera/microphone unavailable: {e}")
    finally:
        seq.close()

    state = "delivered" if result.delivered else f"not delivered ({result.error})"
    print(f"[ghost_capture] sequence complete, moment {state}")


if __name__ == "__main__":
    main()
