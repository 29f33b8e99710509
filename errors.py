"""Shared error codes, user-facing messages and the exception taxonomy."""

from __future__ import annotations

DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
DEVICE_BUSY = "DEVICE_BUSY"
DEVICE_LOST = "DEVICE_LOST"
MODEL_LOAD_ERROR = "MODEL_LOAD_ERROR"
NO_ENGINE_LOADED = "NO_ENGINE_LOADED"
ENGINE_BUSY = "ENGINE_BUSY"
INFERENCE_ERROR = "INFERENCE_ERROR"
SESSION_TOO_SHORT = "SESSION_TOO_SHORT"
NOT_RECORDING = "NOT_RECORDING"
STREAM_GAP = "STREAM_GAP"
POST_PROCESSING_ERROR = "POST_PROCESSING_ERROR"
NO_ACTIVE_TARGET = "NO_ACTIVE_TARGET"

ERROR_MESSAGES = {
    DEVICE_UNAVAILABLE: "No input device is available.",
    DEVICE_BUSY: "The input device is in use by another application.",
    DEVICE_LOST: "The input device was disconnected.",
    MODEL_LOAD_ERROR: "The speech model could not be loaded.",
    NO_ENGINE_LOADED: "No speech engine is loaded.",
    ENGINE_BUSY: "The speech engine is in use by a recording.",
    INFERENCE_ERROR: "Part of the recording could not be transcribed.",
    SESSION_TOO_SHORT: "Recording was too short and was discarded.",
    NOT_RECORDING: "Not recording.",
    STREAM_GAP: "Transcription fell behind; some audio was skipped.",
    POST_PROCESSING_ERROR: "Post-processing failed, showing the previous result.",
    NO_ACTIVE_TARGET: "No active input target, result kept in clipboard.",
}


class ScribeError(Exception):
    code = ""

    def __init__(self, message: str = "", code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message or ERROR_MESSAGES.get(self.code, "")
        super().__init__(self.message)


class DeviceError(ScribeError):
    code = DEVICE_LOST


class DeviceUnavailable(DeviceError):
    code = DEVICE_UNAVAILABLE


class DeviceBusy(DeviceError):
    code = DEVICE_BUSY


class EngineError(ScribeError):
    code = MODEL_LOAD_ERROR


class ModelLoadError(EngineError):
    code = MODEL_LOAD_ERROR


class NoEngineLoaded(EngineError):
    code = NO_ENGINE_LOADED


class EngineBusy(EngineError):
    code = ENGINE_BUSY


class InferenceError(ScribeError):
    code = INFERENCE_ERROR


class SessionError(ScribeError):
    code = NOT_RECORDING


class PostProcessingError(ScribeError):
    code = POST_PROCESSING_ERROR
