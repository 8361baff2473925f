from __future__ import annotations

from typing import Any

from flask import Flask, jsonify

from dds.controller import ResourceMonitor
from dds.state import format_timestamp


def create_app(monitor: ResourceMonitor) -> Flask:
	app = Flask(__name__)
	app.config['dds_monitor'] = monitor

	@app.get("/healthz")
	def healthz() -> Any:
		return jsonify({"status": "ok"})

	@app.get("/readyz")
	def readyz() -> Any:
		monitor = app.config['dds_monitor']
		if monitor.last_success is None:
			return jsonify({"status": "not ready", "reason": "no successful reconcile yet"}), 503
		return jsonify({"status": "ready"})

	@app.get("/status")
	def status() -> Any:
		monitor = app.config['dds_monitor']
		return jsonify({
			"running": monitor.running,
			"last_success": format_timestamp(monitor.last_success) if monitor.last_success else None,
			"consecutive_failures": monitor.consecutive_failures,
			"next_delay_s": monitor.next_delay(),
			"last_cycle": monitor.last_status.to_dict(),
		})

	return app
