"""Rendering of alert notifications: the fixed email template and webhook bodies."""
import json
import re
from datetime import datetime, timezone
from html import escape

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")

SEVERITY_COLORS = {
    "critical": "#FF1744",
    "warning": "#FFC107",
    "info": "#2979FF",
}


def occurrence_fields(occurrence) -> dict:
    """Flat field map used for placeholder substitution."""
    data = occurrence.anomaly_data or {}
    fields = occurrence.to_dict()
    fields.update({
        "value": data.get("value"),
        "threshold": data.get("threshold"),
        "operator": data.get("operator"),
        "window_seconds": data.get("window_seconds"),
        "rule_name": data.get("rule_name"),
        "observed_at": data.get("observed_at"),
        "created_at_iso": _iso(occurrence.created_at),
    })
    return fields


def render_template(template, occurrence, json_escape=False):
    """Substitute ``{{field}}`` placeholders from the occurrence.

    With ``json_escape`` a placeholder wrapped in double quotes renders as the
    inside of a JSON string (``{"msg": "{{message}}"}``), and a bare one
    renders as a complete JSON literal (``{"v": {{value}}}`` gives a number,
    a quoted string or null). Unknown placeholders are left untouched;
    ``anomaly_data`` renders as a JSON object.
    """
    fields = occurrence_fields(occurrence)

    def substitute(match):
        name = match.group(1)
        if name not in fields:
            return match.group(0)
        value = fields[name]
        if not json_escape:
            return _plain(value)
        start, end = match.span()
        quoted = template[start - 1:start] == '"' and template[end:end + 1] == '"'
        if quoted:
            return json.dumps(_plain(value))[1:-1]
        return json.dumps(value, default=str)

    return PLACEHOLDER.sub(substitute, template)


def _plain(value):
    if value is None:
        return ""
    if isinstance(value, (dict, list, bool)):
        return json.dumps(value, default=str)
    return str(value)


def default_webhook_body(occurrence):
    return json.dumps({"event": "alert", "occurrence": occurrence.to_dict()}, default=str)


def render_email(occurrence):
    """Return (subject, plaintext, html) for an occurrence."""
    fields = occurrence_fields(occurrence)
    severity = occurrence.severity.value
    rule_name = fields.get("rule_name") or occurrence.rule_id
    subject = f"[{severity.upper()}] fleetwatch: {rule_name} on {occurrence.agent_id}"

    lines = [
        f"{severity.upper()}: {rule_name}",
        f"Agent: {occurrence.agent_id}",
        f"Group: {occurrence.group_id}",
        f"Condition: {occurrence.message}",
        f"Value: {fields.get('value')}",
        f"Triggered: {fields['created_at_iso']}",
        f"Occurrence: {occurrence.id}",
    ]
    text = "\n".join(lines)

    color = SEVERITY_COLORS.get(severity, "#636E72")
    rows = "".join(
        f'<tr><td style="color: #636E72; padding-right: 12px;">{escape(label)}</td>'
        f"<td>{escape(str(value))}</td></tr>"
        for label, value in (
            ("Agent", occurrence.agent_id),
            ("Group", occurrence.group_id),
            ("Condition", occurrence.message),
            ("Value", fields.get("value")),
            ("Triggered", fields["created_at_iso"]),
        )
    )
    html = f"""
    <div style="font-family: system-ui, sans-serif; max-width: 520px; margin: 0 auto;
                padding: 20px; background: #FFFFFF; color: #1E272E; border-radius: 12px;">
        <h2 style="margin-top: 0;">Fleet Alert</h2>
        <div style="background: #F0F1F6; padding: 16px; border-radius: 8px;
                    border-left: 4px solid {color};">
            <h3 style="margin-top: 0; color: {color};">{escape(severity.upper())}: {escape(str(rule_name))}</h3>
            <table>{rows}</table>
        </div>
        <p style="color: #636E72; font-size: 12px; margin-top: 16px;">
            fleetwatch automated alert {escape(occurrence.id)}
        </p>
    </div>
    """
    return subject, text, html


def _iso(epoch):
    try:
        return datetime.fromtimestamp(float(epoch), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return ""
