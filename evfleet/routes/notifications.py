# evfleet/routes/notifications.py
from flask import Blueprint, jsonify

from evfleet.services.notifications import get_notifications
from evfleet.routes.access import require_module

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')


@notifications_bp.get("")
@require_module("vehicle_deployment")
def index():
    return jsonify(get_notifications())
