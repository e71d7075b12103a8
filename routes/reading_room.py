from flask import Blueprint, jsonify, request

from config import Config
from routes.auth import STAFF_ROLES, actor_id, require_role
from services import reading_room
from services.dates import to_date
from services.validators import page_params

bp = Blueprint("reading_room_bp", __name__)


@bp.route("/api/reading-room")
@require_role(*STAFF_ROLES)
def list_consultations():
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    return jsonify(reading_room.list_consultations(
        status=request.args.get("status"),
        day=to_date(request.args.get("date")),
        page=page,
        limit=limit,
    ))


@bp.route("/api/reading-room", methods=["POST"])
@require_role(*STAFF_ROLES)
def start():
    consultation = reading_room.start_consultation(request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=consultation), 201


@bp.route("/api/reading-room/<consultation_id>")
@require_role(*STAFF_ROLES)
def get_consultation(consultation_id):
    return jsonify(reading_room.get_consultation(consultation_id))


@bp.route("/api/reading-room/<consultation_id>/end", methods=["POST", "PUT"])
@require_role(*STAFF_ROLES)
def end(consultation_id):
    return jsonify(success=True, data=reading_room.end_consultation(consultation_id, actor=actor_id()))
