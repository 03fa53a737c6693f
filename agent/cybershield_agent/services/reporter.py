"""Report generation - summarizes scan sections into a persisted report."""
import json
import logging
import os
import re
import time
from datetime import datetime
from typing import Iterator

logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "high", "medium", "low")

_MAC = re.compile(r"^([0-9a-f]{2}[:-]){5}[0-9a-f]{2}$", re.IGNORECASE)


def mask_mac_address(mac: str) -> str:
    """Keep the vendor prefix, hide the device part."""
    if not isinstance(mac, str) or not _MAC.match(mac):
        return mac
    parts = re.split(r"[:-]", mac)
    return ":".join(parts[:3] + ["xx", "xx", "xx"])


def _sanitize(value):
    if isinstance(value, dict):
        return {
            k: mask_mac_address(v) if k == "mac" else _sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_sanitize(v) for v in value]
    return value


def iter_findings(results: dict) -> Iterator[dict]:
    for section in results.values():
        if isinstance(section, dict):
            for item in section.get("findings", []):
                yield item


def risk_level(issue_count: dict) -> str:
    for severity in SEVERITIES:
        if issue_count.get(severity):
            return severity
    return "none"


def generate_report(scan_id: str, scan_type: str, agent_id: str, hostname: str, results: dict) -> dict:
    """Build the report object stored locally and returned in scan_complete."""
    issue_count = {severity: 0 for severity in SEVERITIES}
    for item in iter_findings(results):
        severity = item.get("severity", "low")
        issue_count[severity if severity in issue_count else "low"] += 1
    issue_count["total"] = sum(issue_count[s] for s in SEVERITIES)

    return {
        "reportId": f"{scan_id}-{int(time.time() * 1000)}",
        "scanId": scan_id,
        "scanType": scan_type,
        "agentId": agent_id,
        "hostname": hostname,
        "timestamp": datetime.utcnow().isoformat(),
        "summary": {
            "riskLevel": risk_level(issue_count),
            "issueCount": issue_count,
        },
        "results": _sanitize(results),
    }


def save_report(reports_dir: str, report: dict) -> str:
    """Write the report as JSON (blocking; call from an executor)."""
    os.makedirs(reports_dir, exist_ok=True)
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "_", str(report["scanId"]))
    path = os.path.join(reports_dir, f"scan_{safe_id}.json")
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, default=str)
    os.replace(tmp_path, path)
    logger.debug(f"Report saved to {path}")
    return path
