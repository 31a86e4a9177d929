"""Core sync logic package."""

from .status import Severity, Progress, StatusEvent, StatusReporter
from .local_scanner import IgnoreRules, LocalFileInfo, LocalTreeScanner, calculate_checksum, get_file_info
from .remote_scanner import RemoteScanResult, RemoteTreeScanner, resolve_item_path
from .transfers import TransferService
from .conflict import (
    Action,
    ConflictCase,
    ConflictDecision,
    ConflictDecisionChannel,
    ConflictResolver,
    classify,
    conflict_file_name
)
from .operation_queue import Operation, OperationKind, OperationQueue
from .reconciler import Reconciler, SyncStats
from .sync_engine import SyncEngine

__all__ = [
    "Severity",
    "Progress",
    "StatusEvent",
    "StatusReporter",
    "IgnoreRules",
    "LocalFileInfo",
    "LocalTreeScanner",
    "calculate_checksum",
    "get_file_info",
    "RemoteScanResult",
    "RemoteTreeScanner",
    "resolve_item_path",
    "TransferService",
    "Action",
    "ConflictCase",
    "ConflictDecision",
    "ConflictDecisionChannel",
    "ConflictResolver",
    "classify",
    "conflict_file_name",
    "Operation",
    "OperationKind",
    "OperationQueue",
    "Reconciler",
    "SyncStats",
    "SyncEngine",
]
