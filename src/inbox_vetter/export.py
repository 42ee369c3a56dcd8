"""Export a report's reviewed messages to CSV or JSON."""

import csv
import json

from inbox_vetter.models import ReportRecord

_FIELDS = [
    "id",
    "receivedAt",
    "from",
    "subject",
    "action",
    "is_scam",
    "is_important",
    "confidence",
    "labelsApplied",
    "reason",
    "attachments",
]


def export_report(report: ReportRecord, format: str, output_path: str) -> int:
    """Export the results stored on a report record.

    Args:
        report: The report whose ``meta["results"]`` is exported.
        format: Output format, either 'csv' or 'json'.
        output_path: Path to write the output file.

    Returns the number of rows written.
    """
    results = report.meta.get("results", [])

    if format == "csv":
        with open(output_path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=_FIELDS, extrasaction="ignore")
            writer.writeheader()
            for item in results:
                writer.writerow(
                    {
                        **item,
                        "labelsApplied": "; ".join(item.get("labelsApplied", [])),
                        "attachments": "; ".join(a.get("filename", "") for a in item.get("attachments", [])),
                    }
                )
    elif format == "json":
        with open(output_path, "w") as f:
            json.dump({"report": report.id, "createdAt": report.created_at, "results": results}, f, indent=2)
    else:
        raise ValueError(f"Unsupported export format: {format}")

    return len(results)
