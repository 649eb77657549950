from datetime import datetime
import enum
from werkzeug.security import generate_password_hash, check_password_hash
from app import db
from flask_login import UserMixin
from utils import calculate_carbon_footprint


def _iso(value):
    return value.isoformat() if value else None


class AdminRole(enum.Enum):
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class ItemCondition(enum.Enum):
    WORKING = "Working"
    DAMAGED = "Damaged"
    NOT_WORKING = "Not Working"


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    full_name = db.Column(db.String(120))
    avatar_url = db.Column(db.String(255))
    eco_points = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'avatar_url': self.avatar_url,
            'eco_points': self.eco_points or 0,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class AdminUser(db.Model):
    __tablename__ = 'admin_users'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    admin_role = db.Column(db.String(20), nullable=False, default=AdminRole.MODERATOR.value)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', foreign_keys=[user_id], lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'email': self.user.email if self.user else None,
            'admin_role': self.admin_role,
            'is_active': self.is_active,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class OfflineSession(db.Model):
    __tablename__ = 'offline_sessions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'started_at': _iso(self.started_at),
            'expires_at': _iso(self.expires_at),
            'is_active': self.is_active
        }


class EwasteItem(db.Model):
    __tablename__ = 'e_waste_items'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    category = db.Column(db.String(50), nullable=False)
    condition = db.Column(db.String(20), nullable=False)
    description = db.Column(db.Text)
    image_url = db.Column(db.String(255))
    weight = db.Column(db.Float)
    status = db.Column(db.String(20), default='registered')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'name': self.name,
            'category': self.category,
            'condition': self.condition,
            'description': self.description,
            'image_url': self.image_url,
            'weight': self.weight,
            'status': self.status,
            'estimated_carbon_saved': calculate_carbon_footprint(self.category),
            'created_at': _iso(self.created_at)
        }


collection_request_items = db.Table(
    'collection_request_items',
    db.Column('collection_request_id', db.Integer, db.ForeignKey('collection_requests.id'), primary_key=True),
    db.Column('e_waste_item_id', db.Integer, db.ForeignKey('e_waste_items.id'), primary_key=True)
)


class CollectionRequest(db.Model):
    __tablename__ = 'collection_requests'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    address = db.Column(db.Text, nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100), nullable=False, default='N/A')
    postal_code = db.Column(db.String(20), nullable=False)
    scheduled_date = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, confirmed, in_progress, completed, cancelled
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    items = db.relationship('EwasteItem', secondary=collection_request_items, lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'address': self.address,
            'city': self.city,
            'state': self.state,
            'postal_code': self.postal_code,
            'scheduled_date': _iso(self.scheduled_date),
            'notes': self.notes,
            'status': self.status,
            'item_ids': [item.id for item in self.items],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class DumpingReport(db.Model):
    __tablename__ = 'dumping_reports'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(255), nullable=False)
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    waste_type = db.Column(db.String(50), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default='medium')  # low, medium, high, critical
    recommendations = db.Column(db.Text)
    image_url = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, in_progress, resolved
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'description': self.description,
            'location': self.location,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'waste_type': self.waste_type,
            'severity': self.severity,
            'recommendations': self.recommendations,
            'image_url': self.image_url,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class MarketplaceListing(db.Model):
    __tablename__ = 'marketplace_listings'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    price = db.Column(db.Float, default=0.0)
    is_free = db.Column(db.Boolean, default=False)
    type = db.Column(db.String(50), nullable=False)
    condition = db.Column(db.String(20), nullable=False)
    location = db.Column(db.String(255), nullable=False, default='Not specified')
    image_url = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default='available')  # available, unavailable
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='listings', lazy=True)

    @property
    def is_available(self):
        return self.status == 'available'

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'seller': self.user.full_name if self.user else None,
            'title': self.title,
            'description': self.description,
            'price': self.price,
            'is_free': self.is_free,
            'type': self.type,
            'condition': self.condition,
            'location': self.location,
            'image_url': self.image_url,
            'status': self.status,
            'is_available': self.is_available,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class WalletBalance(db.Model):
    __tablename__ = 'wallet_balances'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, unique=True)
    balance = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(3), nullable=False, default='ZAR')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'balance': round(self.balance or 0.0, 2),
            'currency': self.currency,
            'updated_at': _iso(self.updated_at)
        }


class WalletTransaction(db.Model):
    __tablename__ = 'wallet_transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='ZAR')
    description = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False)  # deposit, withdrawal
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, completed, failed
    payment_intent_id = db.Column(db.String(255), index=True)
    payment_method = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': self.amount,
            'currency': self.currency,
            'description': self.description,
            'type': self.type,
            'status': self.status,
            'payment_method': self.payment_method,
            'created_at': _iso(self.created_at)
        }


class Payment(db.Model):
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), index=True)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), default='ZAR')
    description = db.Column(db.String(255))
    payment_intent_id = db.Column(db.String(255), unique=True)
    payment_method = db.Column(db.String(50))
    status = db.Column(db.String(20), default='pending')  # pending, completed, failed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'amount': self.amount,
            'currency': self.currency,
            'description': self.description,
            'payment_intent_id': self.payment_intent_id,
            'status': self.status,
            'created_at': _iso(self.created_at)
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), index=True)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(50), nullable=False, default='general')
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'read': self.read,
            'created_at': _iso(self.created_at)
        }


class PasswordResetOtp(db.Model):
    __tablename__ = 'password_reset_otps'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), nullable=False, index=True)
    otp = db.Column(db.String(6), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'expires_at': _iso(self.expires_at),
            'used': self.used
        }


class ChatConversation(db.Model):
    """AI assistant conversation thread"""
    __tablename__ = 'chat_conversations'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    messages = db.relationship('ChatMessage', backref='conversation', lazy=True,
                               order_by='ChatMessage.id', cascade="all, delete-orphan")

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


class ChatMessage(db.Model):
    __tablename__ = 'chat_messages'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('chat_conversations.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # user, assistant
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'role': self.role,
            'content': self.content,
            'created_at': _iso(self.created_at)
        }
