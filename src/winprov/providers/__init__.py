"""Provider interfaces for winprov."""
from __future__ import annotations

from .iis import IISError, IISProvider, IISSiteResult
from .nssm import NssmError, NssmProvider, ServiceRegistration
from .python_runtime import PythonRuntimeError, PythonRuntimeManager, RuntimeEnsureResult
from .service_control import ServiceControl, ServiceControlError
from .virtualenv import VirtualenvError, VirtualenvProvider

__all__ = [
    "IISError",
    "IISProvider",
    "IISSiteResult",
    "NssmError",
    "NssmProvider",
    "PythonRuntimeError",
    "PythonRuntimeManager",
    "RuntimeEnsureResult",
    "ServiceControl",
    "ServiceControlError",
    "ServiceRegistration",
    "VirtualenvError",
    "VirtualenvProvider",
]
