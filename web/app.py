"""
Flask HTTP API for fleetwatch.

Read endpoints (dashboard history):
  GET  /api/groups/<group_id>/alerts              - Occurrences, newest first (limit/offset)
  GET  /api/occurrences/<occurrence_id>/deliveries - Delivery status and attempt log
  GET  /api/health                                 - Engine counters and degraded flag
  GET  /api/agents/health                          - Last reported online/offline status

Write endpoints (collaborator hooks):
  POST /api/groups/<group_id>/invalidate  - Config changed for a group
  POST /api/agents/<agent_id>/invalidate  - Agent moved to another group
  POST /api/agents/<agent_id>/events      - Inbound event feed
  DELETE /api/agents/<agent_id>           - Agent deleted

Started via: python main.py web [--port 8080] [--host 127.0.0.1]
"""
import time
import logging

from flask import Flask, jsonify, request

from models.database import StoreUnavailableError

logger = logging.getLogger("fleetwatch.web.app")


def create_app(config: dict, engines: dict) -> Flask:
    """
    Factory function. Receives initialized engines from main.py CLI or wsgi.py.

    Args:
        config: Application config dict
        engines: dict with the running ``engine`` (AlertEngine) and ``db``
    """
    app = Flask(__name__)
    engine = engines["engine"]

    @app.errorhandler(StoreUnavailableError)
    def store_unavailable(e):
        logger.error(f"Store unavailable: {e}")
        return jsonify({"error": "store unavailable"}), 503

    def _int_arg(name, default):
        try:
            return int(request.args.get(name, default))
        except (TypeError, ValueError):
            return None

    # ─── History ─────────────────────────────────────────

    @app.route("/api/groups/<group_id>/alerts")
    def api_group_alerts(group_id):
        limit = _int_arg("limit", 50)
        offset = _int_arg("offset", 0)
        if limit is None or offset is None:
            return jsonify({"error": "limit and offset must be integers"}), 400
        occurrences = engine.list_occurrences(group_id, limit, offset)
        return jsonify({
            "group_id": group_id,
            "alerts": [o.to_dict() for o in occurrences],
            "count": len(occurrences),
            "total": engine.db.count_occurrences(group_id=group_id),
        })

    @app.route("/api/occurrences/<occurrence_id>/deliveries")
    def api_deliveries(occurrence_id):
        occurrence = engine.db.get_occurrence(occurrence_id)
        if occurrence is None:
            return jsonify({"error": "occurrence not found"}), 404
        return jsonify({
            "occurrence": occurrence.to_dict(),
            "deliveries": engine.list_deliveries(occurrence_id),
        })

    @app.route("/api/health")
    def api_health():
        stats = engine.stats()
        return jsonify({
            "status": "degraded" if stats["degraded"] else "ok",
            "stats": stats,
            "timestamp": time.time(),
        })

    @app.route("/api/agents/health")
    def api_agents_health():
        return jsonify({"agents": engine.health.snapshot()})

    # ─── Collaborator hooks ──────────────────────────────

    @app.route("/api/groups/<group_id>/invalidate", methods=["POST"])
    def api_invalidate_group(group_id):
        engine.invalidate(group_id)
        return jsonify({"invalidated": group_id})

    @app.route("/api/agents/<agent_id>/invalidate", methods=["POST"])
    def api_invalidate_agent(agent_id):
        engine.invalidate_agent(agent_id)
        return jsonify({"invalidated": agent_id})

    @app.route("/api/agents/<agent_id>", methods=["DELETE"])
    def api_forget_agent(agent_id):
        engine.forget_agent(agent_id)
        return jsonify({"deleted": agent_id})

    @app.route("/api/agents/<agent_id>/events", methods=["POST"])
    def api_ingest(agent_id):
        body = request.get_json(silent=True)
        if not isinstance(body, dict) or not body.get("type"):
            return jsonify({"error": "expected a JSON object with 'type' and 'payload'"}), 400
        transitions = engine.ingest(agent_id, body["type"], body.get("payload", {}), body.get("timestamp"))
        return jsonify({
            "accepted": True,
            "transitions": [
                {
                    "rule_id": t.rule_id,
                    "state": "firing" if t.firing else "ok",
                    "occurrence_id": t.occurrence.id if t.occurrence else None,
                }
                for t in transitions
            ],
        }), 202

    return app
