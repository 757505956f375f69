"""Flask application factory and HTTP routes."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..exporter import CSVExporter
from ..speedtests.collector import PassiveCollector
from ..speedtests.gateway_wan import GatewayWanController, is_valid_interface
from ..speedtests.merger import ResultMerger
from ..speedtests.models import Direction, TestTarget
from ..speedtests.service import SpeedTestService

LOGGER = logging.getLogger(__name__)


def create_web_app(
    config: AppConfig,
    service: SpeedTestService,
    merger: ResultMerger,
    collector: Optional[PassiveCollector],
    gateway: GatewayWanController,
    exporter: CSVExporter,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.web.secret_key

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    @app.get("/api/status")
    def api_status():
        return jsonify(
            {
                "collector": collector.status() if collector else None,
                "gateway": {"running": gateway.is_running, "progress": gateway.progress.to_dict()},
            }
        )

    @app.get("/api/speedtests")
    def api_results():
        scope = request.args.get("scope", "default")
        count = request.args.get("count", default=50, type=int)
        hours = request.args.get("hours", type=int)
        host = request.args.get("host")
        direction = request.args.get("direction")
        try:
            directions = [Direction(direction)] if direction else None
        except ValueError:
            return jsonify({"error": f"Unknown direction '{direction}'"}), 400
        results = service.recent(scope, count=count, hours=hours, directions=directions, host=host)
        return jsonify([result.to_dict() for result in results])

    @app.get("/api/speedtests/<int:record_id>")
    def api_result(record_id: int):
        result = service.get(record_id)
        if result is None:
            return jsonify({"error": "Result not found"}), 404
        return jsonify(result.to_dict())

    @app.post("/api/speedtests")
    def api_run_speedtest():
        data = request.get_json(silent=True) or {}
        host = (data.get("host") or "").strip()
        if not host:
            return jsonify({"error": "host is required"}), 400
        target = TestTarget(
            host=host,
            scope_id=data.get("scope", "default"),
            name=data.get("name"),
            device_type=data.get("device_type", "device"),
            ssh_port=int(data.get("ssh_port", 22)),
            username=data.get("username"),
            owns_server=bool(data.get("owns_server", True)),
            trusted=bool(data.get("trusted", False)),
            binary_path=data.get("binary_path"),
        )
        if service.is_running(target):
            return jsonify({"error": "A speed test is already running for this device"}), 409
        service.submit(target, data.get("duration"), data.get("streams"))
        return jsonify({"status": "queued", "host": host}), 202

    @app.post("/api/speedtests/browser")
    def api_browser_result():
        data = request.get_json(silent=True) or {}
        try:
            download = float(data["download_mbps"])
            upload = float(data["upload_mbps"])
        except (KeyError, TypeError, ValueError):
            return jsonify({"error": "download_mbps and upload_mbps are required"}), 400
        result = merger.record_browser(
            scope_id=data.get("scope", "default"),
            peer_address=request.remote_addr or "unknown",
            download_mbps=download,
            upload_mbps=upload,
            download_mb=data.get("download_mb"),
            upload_mb=data.get("upload_mb"),
            ping_ms=data.get("ping_ms"),
            jitter_ms=data.get("jitter_ms"),
        )
        return jsonify(result.to_dict()), 201

    @app.put("/api/speedtests/<int:record_id>/notes")
    def api_update_notes(record_id: int):
        data = request.get_json(silent=True) or {}
        if not service.update_notes(record_id, data.get("notes")):
            return jsonify({"error": "Result not found"}), 404
        return jsonify({"status": "success"})

    @app.delete("/api/speedtests/<int:record_id>")
    def api_delete_result(record_id: int):
        if not service.delete(record_id):
            return jsonify({"error": "Result not found"}), 404
        return jsonify({"status": "deleted"})

    @app.delete("/api/speedtests")
    def api_clear_results():
        scope = request.args.get("scope", "default")
        return jsonify({"status": "cleared", "deleted": service.clear(scope)})

    @app.get("/api/collector/status")
    def api_collector_status():
        if collector is None:
            return jsonify({"state": "disabled"})
        return jsonify(collector.status())

    @app.post("/api/gateway/speedtest")
    def api_gateway_start():
        data = request.get_json(silent=True) or {}
        interface = data.get("interface")
        if not is_valid_interface(interface):
            return jsonify({"error": "Invalid interface name"}), 400
        if not gateway.start(interface, data.get("wan_group"), data.get("wan_name")):
            return jsonify({"error": "A gateway speed test is already running"}), 409
        return jsonify({"status": "started"}), 202

    @app.get("/api/gateway/speedtest/progress")
    def api_gateway_progress():
        payload = gateway.progress.to_dict()
        payload["running"] = gateway.is_running
        return jsonify(payload)

    @app.post("/api/gateway/speedtest/cancel")
    def api_gateway_cancel():
        if not gateway.cancel():
            return jsonify({"error": "No gateway speed test is running"}), 409
        return jsonify({"status": "cancelling"})

    @app.get("/api/gateway/speedtest/result")
    def api_gateway_result():
        result = gateway.last_result
        return jsonify(result.to_dict() if result else None)

    @app.get("/api/export/csv")
    def api_export_csv():
        start = _parse_datetime(request.args.get("start"))
        end = _parse_datetime(request.args.get("end"))
        buffer = exporter.build_csv(start=start, end=end, scope_id=request.args.get("scope"))
        filename = f"speedtests-{datetime.utcnow().strftime('%Y%m%dT%H%M%S')}.csv"
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return app


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    candidate = value.replace("Z", "+00:00") if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        LOGGER.warning("Invalid datetime filter: %s", value)
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
