"""Direct staff-to-resident messages."""
from flask import Blueprint, jsonify
from flask_login import current_user
from sqlalchemy import func
from wtforms import StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional

from extensions import db
from models import Message, User
from routes.forms import ApiForm, int_arg, load_form
from utils.decorators import auth_required, log_action, roles_required
from utils.errors import NotFoundError
from utils.markdown_formatter import clean_user_text
from utils.notification_payloads import SystemPayload
from utils.notification_service import notify

messages_bp = Blueprint("messages", __name__, url_prefix="/api/messages")


class MessageForm(ApiForm):
    recipient_id = StringField("Recipient", validators=[DataRequired(), Length(max=36)])
    subject = StringField("Subject", validators=[Optional(), Length(max=255)])
    text = TextAreaField("Message", validators=[DataRequired(), Length(max=5000)])


def _page(query):
    page = int_arg("page", 1, maximum=10_000)
    limit = int_arg("limit", 20)
    total = query.count()
    items = query.order_by(Message.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"messages": [m.to_dict() for m in items], "total": total, "page": page, "limit": limit}


@messages_bp.route("", methods=["GET"])
@auth_required()
def inbox():
    return jsonify(_page(Message.query.filter(Message.recipient_id == current_user.id)))


@messages_bp.route("/sent", methods=["GET"])
@auth_required()
def sent():
    return jsonify(_page(Message.query.filter(Message.sender_id == current_user.id)))


@messages_bp.route("/unread-count", methods=["GET"])
@auth_required()
def unread():
    count = (
        db.session.query(func.count(Message.id))
        .filter(Message.recipient_id == current_user.id, Message.read.is_(False))
        .scalar()
    )
    return jsonify({"unreadCount": count or 0})


@messages_bp.route("", methods=["POST"])
@roles_required("staff", "admin")
def send_message():
    form = load_form(MessageForm)
    recipient = db.session.get(User, form.recipient_id.data.strip())
    if not recipient:
        raise NotFoundError("Recipient not found")
    message = Message(
        sender_id=current_user.id,
        recipient_id=recipient.id,
        subject=clean_user_text(form.subject.data or "", 255) or None,
        text=clean_user_text(form.text.data),
    )
    db.session.add(message)
    db.session.flush()
    log_action("MESSAGE_SENT", current_user, context=f"message:{message.id}")
    db.session.commit()
    notify(
        recipient.id,
        "system",
        "New message",
        message.subject or f"Message from {current_user.full_name}",
        SystemPayload(link=f"/messages/{message.id}"),
    )
    return jsonify({"message": message.to_dict()}), 201


@messages_bp.route("/<string:message_id>/read", methods=["PATCH"])
@auth_required()
def mark_message_read(message_id):
    message = Message.query.filter_by(id=message_id, recipient_id=current_user.id).first()
    if not message:
        raise NotFoundError("Message not found")
    if not message.read:
        message.read = True
        db.session.commit()
    return jsonify({"message": message.to_dict()})
