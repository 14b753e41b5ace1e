"""Isolation runtimes: one contract over containers and virtual machines."""

from enclave.isolation.base import IsolationRuntime
from enclave.isolation.container import ContainerBackend
from enclave.isolation.factory import create_runtime, detect_backend
from enclave.isolation.models import (
    PROFILES,
    BackendKind,
    ExecuteResult,
    FileInfo,
    IsolationProfile,
    IsolationStatus,
    ProfileUpdateResult,
    SessionStatus,
    get_profile,
)
from enclave.isolation.session import Session, SessionController
from enclave.isolation.vm import VMBackend

__all__ = [
    "PROFILES",
    "BackendKind",
    "ContainerBackend",
    "ExecuteResult",
    "FileInfo",
    "IsolationProfile",
    "IsolationRuntime",
    "IsolationStatus",
    "ProfileUpdateResult",
    "Session",
    "SessionController",
    "SessionStatus",
    "VMBackend",
    "create_runtime",
    "detect_backend",
    "get_profile",
]
