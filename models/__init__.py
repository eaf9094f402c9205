"""Core data models for residents, document requests, notifications, and administration."""
import uuid
from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db


def generate_uuid() -> str:
	return str(uuid.uuid4())


ROLE_NAMES: tuple[str, ...] = (
	"resident",
	"staff",
	"admin",
)

GUEST_ROLE = "guest"

DOCUMENT_TYPES: tuple[str, ...] = (
	"barangay_clearance",
	"residency_certificate",
	"business_permit",
	"indigency_certificate",
	"id_application",
)

REQUEST_STATUSES: tuple[str, ...] = (
	"pending",
	"processing",
	"approved",
	"rejected",
	"completed",
)

PAYMENT_STATUSES: tuple[str, ...] = (
	"pending",
	"paid",
	"waived",
)

NOTIFICATION_CATEGORIES: tuple[str, ...] = (
	"documents",
	"inquiries",
	"system",
	"staff_approval",
)

INQUIRY_TYPES: tuple[str, ...] = (
	"General",
	"Documents",
	"Complaint",
	"Appointment",
	"Other",
)

INQUIRY_STATUSES: tuple[str, ...] = (
	"open",
	"in-progress",
	"scheduled",
	"resolved",
)

VERIFICATION_STATUSES: tuple[str, ...] = (
	"pending",
	"approved",
	"rejected",
)


def _iso(value):
	return value.isoformat() if value else None


class Role(db.Model):
	__tablename__ = "roles"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(50), unique=True, nullable=False, index=True)
	description = db.Column(db.String(255), nullable=True)

	users = db.relationship("User", back_populates="role", lazy="dynamic")

	@staticmethod
	def get_or_create(name: str, description: str = ""):
		role = Role.query.filter_by(name=name).first()
		if role:
			return role
		role = Role(name=name, description=description)
		db.session.add(role)
		db.session.commit()
		return role


class User(UserMixin, db.Model):
	__tablename__ = "users"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	username = db.Column(db.String(80), unique=True, nullable=False, index=True)
	barangay_id = db.Column(db.String(40), unique=True, nullable=True, index=True)
	full_name = db.Column(db.String(150), nullable=False)
	email = db.Column(db.String(255), unique=True, nullable=False, index=True)
	contact_number = db.Column(db.String(40), nullable=True)
	address = db.Column(db.String(500), nullable=True)
	password_hash = db.Column(db.String(255), nullable=False)
	role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
	is_active = db.Column(db.Boolean, default=True, nullable=False)
	is_verified = db.Column(db.Boolean, default=False, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	last_login_at = db.Column(db.DateTime, nullable=True)

	role = db.relationship("Role", back_populates="users")
	audit_logs = db.relationship("AuditLog", back_populates="user", lazy="dynamic")
	document_requests = db.relationship(
		"DocumentRequest",
		back_populates="requester",
		lazy="dynamic",
		foreign_keys="DocumentRequest.requester_id",
	)
	notifications = db.relationship("Notification", back_populates="user", lazy="dynamic", cascade="all, delete-orphan")

	is_guest = False

	def set_password(self, password: str) -> None:
		self.password_hash = generate_password_hash(password, method="pbkdf2:sha256", salt_length=16)

	def check_password(self, password: str) -> bool:
		return check_password_hash(self.password_hash, password)

	@property
	def role_name(self) -> str:
		return (self.role.name if self.role else "").lower()

	@property
	def is_admin(self) -> bool:
		return self.role_name == "admin"

	@property
	def is_staff(self) -> bool:
		return self.role_name in ("staff", "admin")

	@property
	def active(self) -> bool:  # Flask-Login compatibility alias
		return self.is_active

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"username": self.username,
			"barangayID": self.barangay_id,
			"fullName": self.full_name,
			"email": self.email,
			"contactNumber": self.contact_number,
			"address": self.address,
			"role": self.role_name,
			"isActive": self.is_active,
			"isVerified": self.is_verified,
			"createdAt": _iso(self.created_at),
		}


class Guest(UserMixin, db.Model):
	"""Time-bounded visitor identity; never a row in ``users``."""

	__tablename__ = "guests"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(150), nullable=False)
	contact_number = db.Column(db.String(40), nullable=False)
	email = db.Column(db.String(255), nullable=True)
	intent = db.Column(db.String(255), nullable=True)
	session_token = db.Column(db.String(128), unique=True, nullable=False, index=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
	expires_at = db.Column(db.DateTime, nullable=False, index=True)

	is_guest = True
	role_name = "guest"
	is_admin = False
	is_staff = False

	@property
	def is_expired(self) -> bool:
		return datetime.utcnow() >= self.expires_at

	@property
	def is_active(self) -> bool:
		return not self.is_expired

	def get_id(self):
		return f"guest:{self.id}"

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"contactNumber": self.contact_number,
			"email": self.email,
			"intent": self.intent,
			"role": GUEST_ROLE,
			"expiresAt": _iso(self.expires_at),
		}


class AuditLog(db.Model):
	__tablename__ = "audit_logs"

	id = db.Column(db.Integer, primary_key=True)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	action_type = db.Column(db.String(50), nullable=False)
	ip_address = db.Column(db.String(64), nullable=True)
	user_agent = db.Column(db.String(255), nullable=True)
	context_entity = db.Column(db.String(120), nullable=True)
	timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("User", back_populates="audit_logs")


class Template(db.Model):
	__tablename__ = "templates"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	name = db.Column(db.String(255), nullable=False, index=True)
	description = db.Column(db.String(500), nullable=True)
	document_type = db.Column(db.String(50), nullable=True, index=True)
	filename = db.Column(db.String(255), nullable=False)
	content_type = db.Column(db.String(255), nullable=False)
	size = db.Column(db.Integer, nullable=False)
	sha256 = db.Column(db.String(64), nullable=False)
	blob_key = db.Column(db.String(120), unique=True, nullable=False)
	placeholders = db.Column(db.JSON, nullable=False, default=list)
	uploaded_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	uploaded_by = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"description": self.description,
			"documentType": self.document_type,
			"filename": self.filename,
			"contentType": self.content_type,
			"size": self.size,
			"placeholders": list(self.placeholders or []),
			"uploadedBy": self.uploaded_by_id,
			"createdAt": _iso(self.created_at),
		}


class DocumentRequest(db.Model):
	__tablename__ = "document_requests"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	document_type = db.Column(db.String(50), nullable=False, index=True)
	requester_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	requester_username = db.Column(db.String(80), nullable=False)
	requester_barangay_id = db.Column(db.String(40), nullable=True)
	purpose = db.Column(db.String(500), nullable=False)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	document_number = db.Column(db.String(20), unique=True, nullable=True)
	transaction_code = db.Column(db.String(40), unique=True, nullable=True)
	valid_until = db.Column(db.DateTime, nullable=True)
	field_values = db.Column(db.JSON, nullable=False, default=dict)
	template_id = db.Column(db.String(36), db.ForeignKey("templates.id"), nullable=True)
	# Plain column: processed_documents already points back here.
	processed_document_id = db.Column(db.String(36), nullable=True)
	remarks = db.Column(db.String(1000), nullable=True)
	processed_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	date_processed = db.Column(db.DateTime, nullable=True)
	date_approved = db.Column(db.DateTime, nullable=True)
	payment_status = db.Column(db.String(20), nullable=False, default="pending")
	payment_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
	payment_date = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	__table_args__ = (
		db.CheckConstraint(
			"status IN ('pending','processing','approved','rejected','completed')",
			name="status",
		),
		db.CheckConstraint("payment_status IN ('pending','paid','waived')", name="payment_status"),
	)

	requester = db.relationship("User", back_populates="document_requests", foreign_keys=[requester_id])
	processed_by = db.relationship("User", foreign_keys=[processed_by_id])
	template = db.relationship("Template")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"documentType": self.document_type,
			"requester": {
				"id": self.requester_id,
				"username": self.requester_username,
				"barangayID": self.requester_barangay_id,
			},
			"purpose": self.purpose,
			"status": self.status,
			"documentNumber": self.document_number,
			"transactionCode": self.transaction_code,
			"validUntil": _iso(self.valid_until),
			"fieldValues": dict(self.field_values or {}),
			"templateId": self.template_id,
			"processedDocumentId": self.processed_document_id,
			"remarks": self.remarks,
			"processedBy": self.processed_by_id,
			"dateProcessed": _iso(self.date_processed),
			"dateApproved": _iso(self.date_approved),
			"paymentStatus": self.payment_status,
			"paymentAmount": float(self.payment_amount or 0),
			"paymentDate": _iso(self.payment_date),
			"createdAt": _iso(self.created_at),
			"updatedAt": _iso(self.updated_at),
		}


class ProcessedDocument(db.Model):
	__tablename__ = "processed_documents"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	filename = db.Column(db.String(255), nullable=False)
	content_type = db.Column(db.String(255), nullable=False)
	size = db.Column(db.Integer, nullable=False)
	sha256 = db.Column(db.String(64), nullable=False)
	blob_key = db.Column(db.String(120), unique=True, nullable=False)
	template_id = db.Column(db.String(36), db.ForeignKey("templates.id"), nullable=True, index=True)
	request_id = db.Column(db.String(36), db.ForeignKey("document_requests.id"), nullable=True, index=True)
	transaction_code = db.Column(db.String(40), nullable=True, index=True)
	uploaded_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	request = db.relationship("DocumentRequest", foreign_keys=[request_id])
	template = db.relationship("Template")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"filename": self.filename,
			"contentType": self.content_type,
			"size": self.size,
			"sha256": self.sha256,
			"templateId": self.template_id,
			"requestId": self.request_id,
			"transactionCode": self.transaction_code,
			"uploadedBy": self.uploaded_by_id,
			"createdAt": _iso(self.created_at),
		}


class Notification(db.Model):
	__tablename__ = "notifications"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
	category = db.Column(db.String(30), nullable=False, index=True)
	title = db.Column(db.String(255), nullable=False)
	message = db.Column(db.String(2000), nullable=False)
	payload = db.Column(db.JSON, nullable=True)
	read = db.Column(db.Boolean, nullable=False, default=False)
	read_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	__table_args__ = (
		db.Index("ix_notifications_user_read", "user_id", "read"),
		db.CheckConstraint(
			"category IN ('documents','inquiries','system','staff_approval')",
			name="category",
		),
	)

	user = db.relationship("User", back_populates="notifications")


class Inquiry(db.Model):
	__tablename__ = "inquiries"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	created_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	guest_id = db.Column(db.String(36), db.ForeignKey("guests.id"), nullable=True, index=True)
	subject = db.Column(db.String(255), nullable=False)
	message = db.Column(db.Text, nullable=False)
	inquiry_type = db.Column(db.String(40), nullable=False, default="General")
	status = db.Column(db.String(20), nullable=False, default="open", index=True)
	assigned_to_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True, index=True)
	assigned_role = db.Column(db.String(20), nullable=True)
	scheduled_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	created_by = db.relationship("User", foreign_keys=[created_by_id])
	assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
	guest = db.relationship("Guest")
	responses = db.relationship(
		"InquiryResponse",
		back_populates="inquiry",
		cascade="all, delete-orphan",
		order_by="InquiryResponse.created_at",
	)

	def to_dict(self, with_responses: bool = False) -> dict:
		payload = {
			"id": self.id,
			"createdBy": self.created_by_id,
			"guestId": self.guest_id,
			"subject": self.subject,
			"message": self.message,
			"type": self.inquiry_type,
			"status": self.status,
			"assignedTo": self.assigned_to_id,
			"assignedRole": self.assigned_role,
			"scheduledAt": _iso(self.scheduled_at),
			"createdAt": _iso(self.created_at),
			"updatedAt": _iso(self.updated_at),
		}
		if with_responses:
			payload["responses"] = [r.to_dict() for r in self.responses]
		return payload


class InquiryResponse(db.Model):
	__tablename__ = "inquiry_responses"

	id = db.Column(db.Integer, primary_key=True)
	inquiry_id = db.Column(db.String(36), db.ForeignKey("inquiries.id"), nullable=False, index=True)
	author_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	author_name = db.Column(db.String(150), nullable=False)
	author_role = db.Column(db.String(20), nullable=False)
	text = db.Column(db.Text, nullable=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	inquiry = db.relationship("Inquiry", back_populates="responses")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"authorId": self.author_id,
			"authorName": self.author_name,
			"authorRole": self.author_role,
			"text": self.text,
			"createdAt": _iso(self.created_at),
		}


class Message(db.Model):
	__tablename__ = "messages"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	sender_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	recipient_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	inquiry_id = db.Column(db.String(36), db.ForeignKey("inquiries.id"), nullable=True)
	subject = db.Column(db.String(255), nullable=True)
	text = db.Column(db.Text, nullable=False)
	read = db.Column(db.Boolean, nullable=False, default=False)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	sender = db.relationship("User", foreign_keys=[sender_id])
	recipient = db.relationship("User", foreign_keys=[recipient_id])

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"from": self.sender_id,
			"fromName": self.sender.full_name if self.sender else "System",
			"to": self.recipient_id,
			"inquiryId": self.inquiry_id,
			"subject": self.subject,
			"text": self.text,
			"read": self.read,
			"createdAt": _iso(self.created_at),
		}


class Official(db.Model):
	__tablename__ = "officials"

	id = db.Column(db.Integer, primary_key=True)
	name = db.Column(db.String(150), nullable=False)
	position = db.Column(db.String(120), nullable=False, index=True)
	committee = db.Column(db.String(255), nullable=True)
	contact_number = db.Column(db.String(40), nullable=True)
	email = db.Column(db.String(255), nullable=True)
	term_start = db.Column(db.Date, nullable=True)
	term_end = db.Column(db.Date, nullable=True)
	display_order = db.Column(db.Integer, nullable=False, default=0)
	is_active = db.Column(db.Boolean, nullable=False, default=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"position": self.position,
			"committee": self.committee,
			"contactNumber": self.contact_number,
			"email": self.email,
			"termStart": _iso(self.term_start),
			"termEnd": _iso(self.term_end),
			"displayOrder": self.display_order,
			"isActive": self.is_active,
		}


class SystemSetting(db.Model):
	__tablename__ = "system_settings"

	key = db.Column(db.String(80), primary_key=True)
	value = db.Column(db.JSON, nullable=True)
	updated_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	@staticmethod
	def get_value(key: str, default=None):
		setting = db.session.get(SystemSetting, key)
		return setting.value if setting else default

	@staticmethod
	def as_mapping() -> dict:
		return {s.key: s.value for s in SystemSetting.query.order_by(SystemSetting.key).all()}


class VerificationRequest(db.Model):
	__tablename__ = "verification_requests"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, index=True)
	id_type = db.Column(db.String(80), nullable=False)
	filename = db.Column(db.String(255), nullable=False)
	content_type = db.Column(db.String(255), nullable=False)
	size = db.Column(db.Integer, nullable=False)
	blob_key = db.Column(db.String(120), unique=True, nullable=False)
	status = db.Column(db.String(20), nullable=False, default="pending", index=True)
	notes = db.Column(db.String(1000), nullable=True)
	reviewed_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	reviewed_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

	user = db.relationship("User", foreign_keys=[user_id])

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"userId": self.user_id,
			"username": self.user.username if self.user else None,
			"idType": self.id_type,
			"filename": self.filename,
			"size": self.size,
			"status": self.status,
			"notes": self.notes,
			"reviewedBy": self.reviewed_by_id,
			"reviewedAt": _iso(self.reviewed_at),
			"createdAt": _iso(self.created_at),
		}


RESET_MODES: tuple[str, ...] = ("link", "otp")


class PasswordResetToken(db.Model):
	"""Single-use reset secret; only its SHA-256 digest is stored."""

	__tablename__ = "password_reset_tokens"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
	token_hash = db.Column(db.String(64), unique=True, nullable=False)
	mode = db.Column(db.String(10), nullable=False, default="link")
	expires_at = db.Column(db.DateTime, nullable=False)
	used_at = db.Column(db.DateTime, nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

	user = db.relationship("User")

	@property
	def is_expired(self) -> bool:
		return self.expires_at <= datetime.utcnow()


class Announcement(db.Model):
	__tablename__ = "announcements"

	id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
	text = db.Column(db.Text, nullable=False)
	image_key = db.Column(db.String(120), unique=True, nullable=True)
	image_content_type = db.Column(db.String(255), nullable=True)
	created_by_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=True)
	created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
	updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	created_by = db.relationship("User")

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"text": self.text,
			"hasImage": self.image_key is not None,
			"imageUrl": f"/api/announcements/{self.id}/image" if self.image_key else None,
			"createdBy": self.created_by.username if self.created_by else None,
			"createdAt": _iso(self.created_at),
			"updatedAt": _iso(self.updated_at),
		}
