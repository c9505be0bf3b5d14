# chainproof/routes/audit_routes.py
import io
import json
import logging
import uuid

from flask import Blueprint, Response, current_app, jsonify, request, send_file, stream_with_context

from chainproof.errors import AuditError
from chainproof.models import db
from chainproof.models.audit import iso
from chainproof.models.enums import AuditStatus
from chainproof.services import export_service, progress_service, result_store
from chainproof.services.comparison import compare_audits
from chainproof.services.progress_channel import SubscriptionClosed
from chainproof.services.report_renderer import ReportViewRenderer

logger = logging.getLogger(__name__)

bp = Blueprint("audit", __name__)  # el prefijo se aplica al registrar en chainproof/__init__.py


@bp.errorhandler(AuditError)
def handle_audit_error(e: AuditError):
    return jsonify({"ok": False, "error": str(e), "audit_id": e.audit_id}), e.http_status


def _summary(audit):
    return {
        "id": audit.id,
        "contract_name": audit.contract_name,
        "source_address": audit.source_address,
        "network": audit.network,
        "status": audit.status,
        "progress": audit.progress,
        "overall_score": audit.overall_score,
        "risk_level": audit.risk_level,
        "created_at": iso(audit.created_at),
    }


@bp.post("")
def submit():
    """
    Auditoría: enviar contrato
    ---
    tags:
      - Audit
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - contract_name
          properties:
            contract_name:
              type: string
              example: "Vault"
            source_code:
              type: string
              description: Código Solidity (o bien source_address).
            source_address:
              type: string
              description: Dirección verificada en el explorer.
              example: "0x3245166A4399A34A76cc9254BC13Aae3dA07e27b"
            network:
              type: string
              default: "ethereum"
              example: "sepolia"
    responses:
      202:
        description: Aceptado (auditoría encolada)
      400:
        description: Faltan campos
      501:
        description: Task no disponible
    """
    data = request.get_json(silent=True) or {}
    contract_name = (data.get("contract_name") or "").strip()
    if not contract_name:
        return jsonify({"ok": False, "error": "Falta 'contract_name'"}), 400

    # Import diferido de la task
    try:
        from chainproof.tasks.audit_tasks import run_audit
    except ImportError:
        return jsonify({"ok": False, "error": "Task 'audit.run' no disponible"}), 501

    audit = result_store.create_audit(
        contract_name,
        source_code=data.get("source_code"),
        source_address=data.get("source_address") or data.get("address"),
        network=data.get("network"),
    )
    async_res = run_audit.delay(audit.id)
    logger.info(f"audit queued (task {async_res.id})", extra={"audit_id": audit.id})

    return jsonify({
        "ok": True,
        "audit_id": audit.id,
        "task_id": async_res.id,
        "status": audit.status,
    }), 202


@bp.get("")
def list_audits():
    """
    Auditoría: listar últimas 50 (filtrable por ?status=COMPLETED)
    ---
    tags:
      - Audit
    parameters:
      - in: query
        name: status
        required: false
        type: string
        enum: [PENDING, STARTED, ANALYZING, DETECTING, GENERATING_REPORT, COMPLETED, ERROR]
    responses:
      200:
        description: OK
      400:
        description: Estado desconocido
    """
    status = request.args.get("status")
    if status and status.upper() not in AuditStatus.__members__:
        return jsonify({"ok": False, "error": f"Estado desconocido: {status}"}), 400

    audits = result_store.list_audits(status=status, limit=50)
    return jsonify({"ok": True, "items": [_summary(a) for a in audits]}), 200


@bp.get("/<audit_id>")
def get_audit(audit_id: str):
    """
    Auditoría: obtener detalle (incluye hallazgos)
    ---
    tags:
      - Audit
    parameters:
      - in: path
        name: audit_id
        required: true
        type: string
    responses:
      200:
        description: OK
      404:
        description: No encontrada
    """
    audit = result_store.get_audit(audit_id)
    return jsonify({"ok": True, "audit": audit.to_dict()}), 200


@bp.get("/<audit_id>/events")
def events(audit_id: str):
    """
    Auditoría: progreso en vivo (Server-Sent Events)
    ---
    tags:
      - Audit
    produces:
      - text/event-stream
    parameters:
      - in: path
        name: audit_id
        required: true
        type: string
      - in: header
        name: X-Observer-ID
        required: false
        type: string
        description: Identificador estable del observador (re-join tras reconexión).
    responses:
      200:
        description: Stream de eventos; termina tras COMPLETED o ERROR
      404:
        description: No encontrada
    """
    result_store.get_audit(audit_id)
    progress_service.ensure_relay()

    channel = progress_service.get_channel()
    observer_id = request.headers.get("X-Observer-ID") or uuid.uuid4().hex
    keepalive = current_app.config.get("PROGRESS_KEEPALIVE_SECONDS", 15)
    sub = channel.join(audit_id, observer_id)
    # el stream puede durar minutos: no retener la conexión del pool
    db.session.close()

    def stream():
        try:
            while True:
                try:
                    event = sub.get(timeout=keepalive)
                except SubscriptionClosed:
                    break
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: progress\ndata: {json.dumps(event.to_dict())}\n\n"
                if event.is_terminal:
                    break
        finally:
            channel.leave(audit_id, observer_id)

    resp = Response(stream_with_context(stream()), mimetype="text/event-stream")
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp


@bp.post("/compare")
def compare():
    """
    Auditoría: comparar dos auditorías completadas
    ---
    tags:
      - Audit
    consumes:
      - application/json
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required:
            - before_audit_id
            - after_audit_id
          properties:
            before_audit_id:
              type: string
            after_audit_id:
              type: string
    responses:
      200:
        description: OK
      400:
        description: Faltan campos o auditorías idénticas
      404:
        description: No encontrada
      409:
        description: Alguna auditoría no está COMPLETED
    """
    data = request.get_json(silent=True) or {}
    before_id = (data.get("before_audit_id") or "").strip()
    after_id = (data.get("after_audit_id") or "").strip()
    if not before_id or not after_id:
        return jsonify({"ok": False, "error": "Faltan 'before_audit_id' y/o 'after_audit_id'"}), 400

    result = compare_audits(result_store.get_audit(before_id), result_store.get_audit(after_id))
    return jsonify({"ok": True, "comparison": result.to_dict()}), 200


@bp.get("/<audit_id>/export/<fmt>")
def export(audit_id: str, fmt: str):
    """
    Auditoría: exportar reporte
    ---
    tags:
      - Audit
    parameters:
      - in: path
        name: audit_id
        required: true
        type: string
      - in: path
        name: fmt
        required: true
        type: string
        enum: [data, text, raster]
    responses:
      200:
        description: Archivo (JSON, texto o PDF)
      400:
        description: Formato desconocido
      404:
        description: No encontrada
      409:
        description: La auditoría no está COMPLETED
      422:
        description: Falló la captura del reporte
    """
    if fmt not in export_service.FORMATS:
        return jsonify({"ok": False, "error": f"Formato desconocido: {fmt}"}), 400

    audit = result_store.get_audit(audit_id)
    renderer = None
    if fmt == "raster":
        renderer = ReportViewRenderer(width=current_app.config.get("EXPORT_RENDER_WIDTH", 1240))
    content = export_service.render_export(audit, fmt, renderer)

    return send_file(
        io.BytesIO(content),
        mimetype=export_service.export_mimetype(fmt),
        as_attachment=True,
        download_name=export_service.export_filename(audit, fmt),
    )
