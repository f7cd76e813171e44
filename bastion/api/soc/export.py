"""
SOC Export

Renders audit log and statistics exports as downloadable documents.
"""

import csv
import io
import json
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from bastion.api.db.models import AuditLog
from bastion.api.errors import ValidationError
from bastion.api.soc.schemas import AuditLogResponse


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


def parse_export_format(value: str) -> ExportFormat:
    try:
        return ExportFormat(value.lower())
    except ValueError:
        raise ValidationError(
            f"Invalid export format '{value}'",
            details={"allowed": [f.value for f in ExportFormat]},
        )


def _text(value: Any) -> str:
    return "" if value is None else str(value)


CSV_COLUMNS: List[Tuple[str, Callable[[AuditLog], Any]]] = [
    ("ID", lambda log: log.id),
    ("Timestamp", lambda log: log.created_at.isoformat() if log.created_at else ""),
    ("User ID", lambda log: log.user_id),
    ("User Email", lambda log: log.user_email),
    ("Action", lambda log: log.action),
    ("Resource", lambda log: log.resource),
    ("Resource ID", lambda log: log.resource_id),
    ("Status", lambda log: log.status),
    ("IP Address", lambda log: log.ip_address),
    ("User Agent", lambda log: log.user_agent),
    ("Error Message", lambda log: log.error_message),
    ("Incident Status", lambda log: log.incident_status),
    ("Priority", lambda log: log.priority),
    ("Assigned To", lambda log: log.assigned_to),
    ("Details", lambda log: json.dumps(log.details, sort_keys=True) if log.details else ""),
]


def audit_logs_to_csv(logs: Sequence[AuditLog]) -> str:
    """One header row, then one row per entry; fields quoted only when needed."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([header for header, _ in CSV_COLUMNS])
    for log in logs:
        writer.writerow([_text(getter(log)) for _, getter in CSV_COLUMNS])
    return buffer.getvalue()


def audit_logs_document(
    logs: Sequence[AuditLog],
    total: int,
    filters: Dict[str, Any],
    exported_at: datetime,
) -> Dict[str, Any]:
    return {
        "export_date": exported_at.isoformat(),
        "filter": filters,
        "total": total,
        "exported": len(logs),
        "logs": [AuditLogResponse.model_validate(log).model_dump(mode="json") for log in logs],
    }


def stats_document(
    statistics: Dict[str, Any],
    exported_at: datetime,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "export_date": exported_at.isoformat(),
        "period": {
            "start_date": start_date.isoformat() if start_date else None,
            "end_date": end_date.isoformat() if end_date else None,
        },
        "statistics": statistics,
    }


def export_filename(prefix: str, export_format: ExportFormat, exported_at: datetime) -> str:
    return f"{prefix}-{exported_at.date().isoformat()}.{export_format.value}"
