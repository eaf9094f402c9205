"""Notification inbox endpoints and the per-user event stream."""
from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user

from routes.forms import bool_arg, int_arg, json_body
from utils.connection_registry import format_sse, get_registry
from utils.decorators import auth_required
from utils.errors import ValidationError
from utils.notification_service import (
    delete_many,
    delete_notification,
    list_notifications,
    mark_many_read,
    mark_read,
    notification_to_dict,
    unread_count,
)

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def _ids_from_body() -> list:
    ids = json_body().get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, (str, int)) for i in ids):
        raise ValidationError("ids must be a list of notification ids")
    return ids


@notifications_bp.route("", methods=["GET"])
@auth_required()
def get_notifications():
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", int(current_app.config.get("NOTIFICATIONS_PAGE_SIZE", 20)))
    items, total = list_notifications(
        current_user.id,
        page=page,
        limit=limit,
        search=request.args.get("search"),
        category=request.args.get("type"),
        unread_only=bool_arg("unread"),
    )
    return jsonify(
        {
            "notifications": [notification_to_dict(n) for n in items],
            "total": total,
            "page": page,
            "limit": limit,
            "unreadCount": unread_count(current_user.id),
        }
    )


@notifications_bp.route("/unread-count", methods=["GET"])
@auth_required()
def get_unread_count():
    return jsonify({"unreadCount": unread_count(current_user.id)})


@notifications_bp.route("/<string:notification_id>/read", methods=["PATCH"])
@auth_required()
def read_one(notification_id):
    notification = mark_read(current_user.id, notification_id)
    return jsonify({"notification": notification_to_dict(notification), "unreadCount": unread_count(current_user.id)})


@notifications_bp.route("/read", methods=["PATCH"])
@auth_required()
def read_many():
    body = json_body()
    if body.get("all") is True:
        updated = mark_many_read(current_user.id)
    else:
        updated = mark_many_read(current_user.id, _ids_from_body())
    return jsonify({"updated": updated, "unreadCount": unread_count(current_user.id)})


@notifications_bp.route("/<string:notification_id>", methods=["DELETE"])
@auth_required()
def delete_one(notification_id):
    delete_notification(current_user.id, notification_id)
    return jsonify({"message": "Notification deleted", "unreadCount": unread_count(current_user.id)})


@notifications_bp.route("", methods=["DELETE"])
@auth_required()
def delete_selected():
    deleted = delete_many(current_user.id, _ids_from_body())
    return jsonify({"deleted": deleted, "unreadCount": unread_count(current_user.id)})


@notifications_bp.route("/stream", methods=["GET"])
@auth_required()
def stream():
    user_id = current_user.id
    registry = get_registry()
    heartbeat = float(current_app.config.get("SSE_HEARTBEAT_SECONDS", 25))
    logger = current_app.logger
    connection = registry.add(user_id)
    initial = format_sse("connected", {"unreadCount": unread_count(user_id)})
    logger.info("notification_stream_opened", extra={"user_id": user_id, "connection_id": connection.id})

    def events():
        try:
            yield initial
            while True:
                item = connection.next_event(heartbeat)
                if item is False:
                    break
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                event, data = item
                yield format_sse(event, data)
        finally:
            registry.remove(connection)
            logger.info("notification_stream_closed", extra={"user_id": user_id, "connection_id": connection.id})

    response = Response(events(), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response
