import asyncio

from pytest_httpserver import HTTPServer

from codemend.config.integrations import WebhookConfig
from codemend.config.remediation import ScanOptions
from codemend.engine import RemediationEngine

CONTENT = "def check(value):\n    return value == None\n"


def test_batch_events_reach_the_webhook(httpserver: HTTPServer, project_root, storage, offline_config):
    httpserver.expect_request("/hooks/codemend", method="POST").respond_with_json({"status": "ok"})
    offline_config.integrations.webhook = WebhookConfig(url=httpserver.url_for("/hooks/codemend"), enabled=True)
    (project_root / "check.py").write_text(CONTENT)

    report = asyncio.run(RemediationEngine(config=offline_config, storage=storage).run(project_root, ScanOptions(concurrency=2)))

    assert report.applied == 1
    bodies = [request.get_json() for request, _ in httpserver.log]
    assert [b["event_type"] for b in bodies] == ["applied", "batch_completed"]
    assert all(b["project"] == project_root.name for b in bodies)
    applied = bodies[0]["payload"]
    assert (applied["rule_id"], applied["strategy"], applied["files"]) == ("none-comparison", "contextual", ["check.py"])
    assert "+    return value is None" in applied["diff"]
    assert bodies[1]["payload"]["applied"] == 1
    assert bodies[1]["payload"]["errors"] == []
