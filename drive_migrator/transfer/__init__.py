from drive_migrator.transfer.manifest import ManifestBuilder, canonicalize_items, canonicalize_path
from drive_migrator.transfer.progress import ParsedLine, parse_line
from drive_migrator.transfer.rclone import TransferInvocation, build_invocation
from drive_migrator.transfer.supervisor import ProcessSupervisor, SupervisedProcess

__all__ = [
    "ManifestBuilder",
    "canonicalize_items",
    "canonicalize_path",
    "ParsedLine",
    "parse_line",
    "TransferInvocation",
    "build_invocation",
    "ProcessSupervisor",
    "SupervisedProcess",
]
