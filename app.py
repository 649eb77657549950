import os
import logging
from dotenv import load_dotenv
load_dotenv()  # Local .env for development, deployed hosts set real env vars

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager

from realtime import ChangeFeed

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev_key_for_local_use')

# Database
db_url = os.environ.get('DATABASE_URL', 'sqlite:///ecycle.db')
if db_url.startswith('postgres://'):
    db_url = db_url.replace('postgres://', 'postgresql://', 1)
app.config['SQLALCHEMY_DATABASE_URI'] = db_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Uploaded images (avatars, listing photos, dumping report photos)
app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER', os.path.join(app.root_path, 'static', 'uploads'))
app.config['MAX_CONTENT_LENGTH'] = 8 * 1024 * 1024

# Offline mode window
app.config['OFFLINE_SESSION_MINUTES'] = int(os.environ.get('OFFLINE_SESSION_MINUTES', '15'))

# AI gateway used by the assistant and the dumping report analysis
app.config['AI_GATEWAY_URL'] = os.environ.get('AI_GATEWAY_URL', 'https://ai.gateway.lovable.dev/v1/chat/completions')
app.config['AI_GATEWAY_API_KEY'] = os.environ.get('AI_GATEWAY_API_KEY')
app.config['AI_MODEL'] = os.environ.get('AI_MODEL', 'google/gemini-2.5-flash')

# Payments and email
app.config['STRIPE_SECRET_KEY'] = os.environ.get('STRIPE_SECRET_KEY')
app.config['STRIPE_WEBHOOK_SECRET'] = os.environ.get('STRIPE_WEBHOOK_SECRET')
app.config['RESEND_API_KEY'] = os.environ.get('RESEND_API_KEY')
app.config['MAIL_FROM'] = os.environ.get('MAIL_FROM', 'E-Cycle <noreply@resend.dev>')

db = SQLAlchemy(app)

# Push-style change events for the persisted collections
change_feed = ChangeFeed()

login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    from models import User
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'success': False, 'message': 'Login required'}), 401


with app.app_context():
    import models  # noqa: F401
    db.create_all()
    logger.info('Database tables ready')
