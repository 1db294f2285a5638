import uuid
from datetime import datetime, timezone
from typing import Dict, List

from tablebridge.observability.logger import log_event


class AuditLogger:
    """
    Responsible for building and persisting audit records of saves.
    """
    def build_record(
        self,
        request_id: str,
        action: str,
        source_path: str,
        target_path: str,
        source_format: str,
        tables: List[str],
        dirty_tables: List[str],
        decision: str,
        duration: float,
    ) -> Dict:
        return {
            "audit_id": str(uuid.uuid4()),
            "request_id": request_id,
            "action": action,
            "source_path": source_path,
            "target_path": target_path,
            "source_format": source_format,
            "tables": tables,
            "dirty_tables": dirty_tables,
            "decision": decision,
            "duration_seconds": duration,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def persist(self, record: Dict):
        """
        Structured log output; log shipping happens outside this process.
        """
        log_event("AUDIT_EVENT", record)
