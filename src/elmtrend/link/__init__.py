"""
Host-side link to an ELM327 OBD-II adapter.

The subpackage holds the transports (serial, BLE), the prompt-delimited frame
parser, the single-flight command scheduler, adapter session setup, response
decoding and the polling samplers that feed the snapshot history. Everything
runs on one asyncio event loop.
"""

from .config import AdapterConfig, ElmConfig, HistoryConfig, LinkConfig, PollingConfig, load_config
from .decoder import PIDS, ParameterDescriptor, TestRecord, decode_parameter, get_descriptor
from .errors import (
    CommandTimeout,
    ElmError,
    MalformedResponse,
    SessionClosed,
    TransportError,
    UnsupportedParameter,
)
from .frames import PromptFrameParser
from .runner import TelemetryHost
from .sampler import CircuitBreaker, ParameterState, PeriodicTicker, PollingSupervisor, build_sampler
from .scheduler import Clock, CommandScheduler
from .session import AdapterSession
from .transport import BleTransport, SerialTransport, Transport, build_transport

__all__ = [
    "AdapterConfig",
    "ElmConfig",
    "HistoryConfig",
    "LinkConfig",
    "PollingConfig",
    "load_config",
    "PIDS",
    "ParameterDescriptor",
    "TestRecord",
    "decode_parameter",
    "get_descriptor",
    "CommandTimeout",
    "ElmError",
    "MalformedResponse",
    "SessionClosed",
    "TransportError",
    "UnsupportedParameter",
    "PromptFrameParser",
    "TelemetryHost",
    "CircuitBreaker",
    "ParameterState",
    "PeriodicTicker",
    "PollingSupervisor",
    "build_sampler",
    "Clock",
    "CommandScheduler",
    "AdapterSession",
    "BleTransport",
    "SerialTransport",
    "Transport",
    "build_transport",
]
