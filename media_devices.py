#!/usr/bin/env python3
"""
Host-side media collaborators for the ghost capture sequence.

  CameraMicrophone.get_user_media()  -> CameraStream (OpenCV camera + mic probe)
  CameraStream.create_recorder()     -> SoundDeviceRecorder (WAV bytes on stop)
  FixedGeolocation                   -> GeoReading from configured coordinates

sounddevice is imported late: PortAudio may be missing on headless boxes and
the camera path must keep working without it.
"""

import io
import time
import wave
from dataclasses import dataclass

import cv2


class MediaAccessError(RuntimeError):
    """Camera or microphone access was denied or no device exists."""


@dataclass
class GeoReading:
    lat: float
    lng: float
    time: int  # epoch millis of the fix

    def to_dict(self):
        return {"lat": self.lat, "lng": self.lng, "time": self.time}


def encode_wav(raw: bytes, samplerate: int, channels: int) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as handle:
        handle.setnchannels(int(channels))
        handle.setsampwidth(2)
        handle.setframerate(int(samplerate))
        handle.writeframes(raw)
    return buf.getvalue()


class SoundDeviceRecorder:
    mime_type = "audio/wav"

    def __init__(self, device=None, samplerate: int = 44100, channels: int = 1):
        self.device = device
        self.samplerate = int(samplerate)
        self.channels = int(channels)
        self._chunks = []
        self._stream = None

    @property
    def state(self) -> str:
        if self._stream is not None and self._stream.active:
            return "recording"
        return "inactive"

    def _callback(self, indata, frames, time_info, status):
        if status:
            print(f"[media_devices][audio] {status}")
        self._chunks.append(bytes(indata))

    def start(self):
        import sounddevice as sd

        self._stream = sd.RawInputStream(
            samplerate=self.samplerate,
            channels=self.channels,
            dtype="int16",
            device=self.device,
            callback=self._callback,
        )
        try:
            self._stream.start()
        except Exception:
            self.close()
            raise

    def stop(self) -> bytes:
        if self._stream is None:
            raise RuntimeError("recorder is not open")
        try:
            self._stream.stop()
        finally:
            self.close()
        return encode_wav(b"".join(self._chunks), self.samplerate, self.channels)

    def close(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()


class CameraStream:
    """Combined video+audio handle; video via cv2.VideoCapture."""

    def __init__(self, cap, audio_tracks, recorder_kwargs):
        self.cap = cap
        self._audio_tracks = list(audio_tracks)
        self._recorder_kwargs = dict(recorder_kwargs)

    def wait_ready(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.cap.grab():
                return True
            time.sleep(0.05)
        return False

    def read_frame(self):
        ok, frame = self.cap.read()
        return frame if ok else None

    def audio_tracks(self):
        return list(self._audio_tracks)

    def create_recorder(self):
        return SoundDeviceRecorder(**self._recorder_kwargs)

    def stop(self):
        self.cap.release()


class CameraMicrophone:
    def __init__(self, camera_index: int = 0, audio_device=None,
                 samplerate: int = 44100, channels: int = 1):
        self.camera_index = camera_index
        self.audio_device = audio_device
        self.samplerate, self.channels = samplerate, channels

    def _input_tracks(self):
        try:
            import sounddevice as sd
            info = sd.query_devices(self.audio_device, kind="input")
        except Exception as e:
            print(f"[media_devices][audio] no microphone: {e}")
            return []
        if isinstance(info, dict) and info.get("max_input_channels", 0) > 0:
            return [info]
        return []

    def get_user_media(self, video: bool = True, audio: bool = True) -> CameraStream:
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise MediaAccessError(f"camera {self.camera_index} not available")

        tracks = self._input_tracks() if audio else []
        return CameraStream(cap, tracks, {
            "device": self.audio_device,
            "samplerate": self.samplerate,
            "channels": self.channels,
        })


class FixedGeolocation:
    """Reports configured coordinates, stamped at lookup time."""

    def __init__(self, lat: float, lng: float):
        self.lat, self.lng = float(lat), float(lng)

    def get_current_position(self) -> GeoReading:
        return GeoReading(self.lat, self.lng, int(time.time() * 1000))
