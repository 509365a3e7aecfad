import enum
import logging
import secrets
import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

db = SQLAlchemy()
logger = logging.getLogger(__name__)

ACCESS_KEY_PREFIX = 'sk_'


class ShopStatus(enum.Enum):
    INSTALLED = 'installed'
    UNINSTALLED = 'uninstalled'


class Shop(db.Model):
    __tablename__ = 'shops'
    shop_domain = db.Column('shop', db.String(255), primary_key=True)
    access_token = db.Column(db.String(255), nullable=False)
    scope = db.Column(db.String(255))  # Scopes granted by the merchant

    installed_at = db.Column(db.DateTime, default=datetime.utcnow)
    uninstalled_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    extension_keys = db.relationship('ExtensionKey', backref='shop', lazy=True)
    sender_config = db.relationship('SenderConfig', backref='shop', uselist=False, lazy=True)

    @property
    def status(self):
        return ShopStatus.INSTALLED if self.is_active else ShopStatus.UNINSTALLED

    def install(self, access_token, scope=None):
        """Moves the shop to INSTALLED with a fresh platform token."""
        self.access_token = access_token
        self.scope = scope
        self.installed_at = datetime.utcnow()
        self.uninstalled_at = None
        self.is_active = True

    def uninstall(self):
        """Moves the shop to UNINSTALLED and disables every key it owns."""
        self.is_active = False
        self.uninstalled_at = datetime.utcnow()
        for key in self.extension_keys:
            key.is_active = False


class ExtensionKey(db.Model):
    """Long-lived bearer credential used by the browser extension"""
    __tablename__ = 'extension_keys'
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    shop_domain = db.Column('shop', db.String(255), db.ForeignKey('shops.shop'), nullable=False, index=True)
    access_key = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255))  # e.g. "Warehouse laptop"
    last_used_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'accessKey': self.access_key,
            'name': self.name,
            'createdAt': _iso(self.created_at),
            'lastUsedAt': _iso(self.last_used_at),
        }


# Wire name -> column attribute
SENDER_FIELDS = {
    'senderIdentificationType': 'sender_identification_type',
    'senderId': 'sender_id',
    'senderName': 'sender_name',
    'senderPhone': 'sender_phone',
    'senderMail': 'sender_mail',
    'provinciaSender': 'provincia_sender',
    'cantonSender': 'canton_sender',
    'distritoSender': 'distrito_sender',
    'senderPostalCode': 'sender_postal_code',
    'senderDirection': 'sender_direction',
}

SENDER_DEFAULTS = {
    'senderIdentificationType': '1',
    'provinciaSender': '1',
    'cantonSender': '1',
    'distritoSender': '1',
}


class SenderConfig(db.Model):
    """Shipping origin of a shop, one row per shop"""
    __tablename__ = 'sender_configs'
    shop_domain = db.Column('shop', db.String(255), db.ForeignKey('shops.shop'), primary_key=True)
    sender_identification_type = db.Column(db.String(50), default='1')  # 1=national id, 2=DIMEX, 3=passport
    sender_id = db.Column(db.String(100))
    sender_name = db.Column(db.String(255))
    sender_phone = db.Column(db.String(50))
    sender_mail = db.Column(db.String(255))
    provincia_sender = db.Column(db.String(50), default='1')
    canton_sender = db.Column(db.String(50), default='1')
    distrito_sender = db.Column(db.String(50), default='1')
    sender_postal_code = db.Column(db.String(50))
    sender_direction = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def sender_fields(self):
        return {wire: getattr(self, attr) for wire, attr in SENDER_FIELDS.items()}

    def to_dict(self):
        data = {'shop': self.shop_domain}
        data.update(self.sender_fields())
        data['createdAt'] = _iso(self.created_at)
        data['updatedAt'] = _iso(self.updated_at)
        return data


def _iso(value):
    return value.isoformat() if value else None


# --- DATABASE ---

def init_database():
    """Creates missing tables and checks connectivity. Needs an app context."""
    try:
        db.session.execute(text('SELECT 1'))
        logger.info("Database connection established")
        db.create_all()
        logger.info("Models synchronized")
        return True
    except SQLAlchemyError:
        logger.exception("Could not connect to the database")
        db.session.rollback()
        return False


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


# --- SHOPS ---

def save_shop_session(shop_domain, access_token, scope=None):
    shop = db.session.get(Shop, shop_domain)
    created = shop is None
    if created:
        shop = Shop(shop_domain=shop_domain)
        db.session.add(shop)
    shop.install(access_token, scope)
    _commit()
    logger.info("Shop %s: %s", 'installed' if created else 'updated', shop_domain)
    return shop


def get_shop_session(shop_domain):
    """Returns the shop only while it is installed."""
    if not shop_domain:
        return None
    return Shop.query.filter_by(shop_domain=shop_domain, is_active=True).first()


def deactivate_shop(shop_domain):
    shop = db.session.get(Shop, shop_domain) if shop_domain else None
    if not shop:
        logger.warning("Uninstall for unknown shop %s", shop_domain)
        return False
    shop.uninstall()
    _commit()
    logger.info("Shop uninstalled: %s", shop_domain)
    return True


def get_active_shops_count():
    return Shop.query.filter_by(is_active=True).count()


# --- EXTENSION KEYS ---

def generate_access_key():
    return ACCESS_KEY_PREFIX + secrets.token_hex(32)


def create_extension_key(shop_domain, name=None):
    if not get_shop_session(shop_domain):
        raise LookupError(f"Shop not found: {shop_domain}")

    key = ExtensionKey(shop_domain=shop_domain, access_key=generate_access_key(), name=name, is_active=True)
    db.session.add(key)
    _commit()
    logger.info("Access key created for %s", shop_domain)
    return key


def validate_extension_key(access_key):
    """Returns the key when it and its shop are both active, stamping last use."""
    key = (ExtensionKey.query
           .join(Shop)
           .filter(ExtensionKey.access_key == access_key,
                   ExtensionKey.is_active.is_(True),
                   Shop.is_active.is_(True))
           .first())
    if not key:
        return None
    key.last_used_at = datetime.utcnow()
    _commit()
    return key


def get_shop_extension_keys(shop_domain):
    return (ExtensionKey.query
            .filter_by(shop_domain=shop_domain, is_active=True)
            .order_by(ExtensionKey.created_at.desc())
            .all())


def revoke_extension_key(access_key, shop_domain):
    updated = (ExtensionKey.query
               .filter_by(access_key=access_key, shop_domain=shop_domain)
               .update({'is_active': False}, synchronize_session='fetch'))
    _commit()
    logger.info("Access key revoked: %s...", access_key[:10])
    return updated > 0


# --- SENDER CONFIG ---

def save_sender_config(shop_domain, config):
    """Replaces the whole sender config of a shop; missing fields fall back to defaults."""
    sender = db.session.get(SenderConfig, shop_domain)
    created = sender is None
    if created:
        sender = SenderConfig(shop_domain=shop_domain)
        db.session.add(sender)

    for wire, attr in SENDER_FIELDS.items():
        value = config.get(wire)
        if value is None:
            value = SENDER_DEFAULTS.get(wire)
        elif not isinstance(value, str):
            value = str(value)
        setattr(sender, attr, value)

    _commit()
    logger.info("Sender config %s for %s", 'created' if created else 'updated', shop_domain)
    return sender


def get_sender_config(shop_domain):
    return db.session.get(SenderConfig, shop_domain)


def delete_shop_data(shop_domain):
    """Hard-deletes everything stored for a shop."""
    keys = ExtensionKey.query.filter_by(shop_domain=shop_domain).delete(synchronize_session=False)
    configs = SenderConfig.query.filter_by(shop_domain=shop_domain).delete(synchronize_session=False)
    shops = Shop.query.filter_by(shop_domain=shop_domain).delete(synchronize_session=False)
    _commit()
    db.session.expire_all()
    logger.info("Deleted data for %s: %s shop, %s keys, %s configs", shop_domain, shops, keys, configs)
    return {'shops': shops, 'extension_keys': keys, 'sender_configs': configs}
