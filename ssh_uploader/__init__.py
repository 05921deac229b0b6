# ssh-uploader
#
# Uploads local files and directories to a remote host over SSH/SFTP, optionally
# packaging directories into zip archives first, with verified results and a
# single cumulative progress percentage.

__version__ = "1.2.0"

from .config_manager import UploadSettings
from .models import BatchResult, ConnectionCredentials, ProgressEvent, UnitErrorEvent, UploadRequest, UploadResult
from .orchestrator import UploadOrchestrator, check_local_path_exists, estimate_and_upload, upload_batch_archived

__all__ = [
    "__version__",
    "BatchResult",
    "ConnectionCredentials",
    "ProgressEvent",
    "UnitErrorEvent",
    "UploadOrchestrator",
    "UploadRequest",
    "UploadResult",
    "UploadSettings",
    "check_local_path_exists",
    "estimate_and_upload",
    "upload_batch_archived",
]
