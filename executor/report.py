"""
Report assembly from loaded audit state.
Pure functions over the state_data dict returned by AuditExecutor.load_audit_state.
"""

from typing import Any, Dict, List

TOP_BROKEN_INTERNAL = 5
TOP_BROKEN_EXTERNAL = 3
TOP_ISSUES = 8
RECENT_PAGES = 5


def _is_ok(status) -> bool:
    return isinstance(status, int) and not isinstance(status, bool) and 200 <= status < 300


def extract_top_issues(state_data: Dict[str, Any]) -> List[Dict[str, Any]]:
    issues = []

    for url, data in list((state_data.get("bad_requests") or {}).items())[:TOP_BROKEN_INTERNAL]:
        issues.append({
            "type": "broken_internal",
            "url": url,
            "status": (data or {}).get("status"),
            "severity": "high",
        })

    broken_external = [
        (url, data) for url, data in (state_data.get("external_links") or {}).items()
        if (data or {}).get("status") != "TIMEOUT" and not _is_ok((data or {}).get("status"))
    ]
    for url, data in broken_external[:TOP_BROKEN_EXTERNAL]:
        issues.append({
            "type": "broken_external",
            "url": url,
            "status": data.get("status"),
            "severity": "medium",
        })

    return issues[:TOP_ISSUES]


def generate_simple_report(state_data: Dict[str, Any]) -> Dict[str, Any]:
    stats = state_data.get("stats") or {}
    bad_requests = state_data.get("bad_requests") or {}
    external_links = state_data.get("external_links") or {}
    visited = list(state_data.get("visited") or [])

    ok_links = broken_external = timeout_links = 0
    for link in external_links.values():
        status = (link or {}).get("status")
        if _is_ok(status):
            ok_links += 1
        elif status == "TIMEOUT":
            timeout_links += 1
        else:
            broken_external += 1

    return {
        "summary": {
            "total_pages": len(visited),
            "total_internal_links": len(stats),
            "total_external_links": len(external_links),
            "broken_links": len(bad_requests),
            "ok_links": ok_links,
            "broken_external": broken_external,
            "timeout_links": timeout_links,
        },
        "detailed": {
            "all_stats": stats,
            "all_bad_requests": bad_requests,
            "all_external_links": external_links,
            "mailto_links": state_data.get("mailto_links") or {},
            "tel_links": state_data.get("tel_links") or {},
        },
        "top_issues": extract_top_issues(state_data),
        "recent_pages": visited[-RECENT_PAGES:],
    }


def generate_full_report(state_data: Dict[str, Any]) -> Dict[str, Any]:
    """Simple report plus page data compression info."""
    simple = generate_simple_report(state_data)
    detailed = dict(simple["detailed"])
    detailed["compression_info"] = state_data.get("page_data")
    return {"simple": simple, "detailed": detailed}
