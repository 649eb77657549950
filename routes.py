from functools import wraps

from flask import request, jsonify, g, current_app, send_from_directory
from flask_login import login_required, login_user, logout_user, current_user
from werkzeug.datastructures import FileStorage
from werkzeug.security import generate_password_hash

from app import app, db
from models import User, AdminRole, ItemCondition
from errors import BackendError, PermissionDenied, FunctionError
from forms import (LoginForm, RegisterForm, ProfileForm, AvatarForm, PasswordChangeForm, PasswordResetRequestForm,
                   PasswordResetForm, RegisterItemForm, CollectionRequestForm, DumpingReportForm,
                   MarketplaceListingForm, WalletDepositForm, WalletWithdrawForm, ChatForm, AdminRoleForm)
from lifecycle import InvalidTransition, TransitionDenied
from offline import SessionTimer, offline_guard
from rbac import RoleAuthorizer
from store import request_store
from utils import (get_ewaste_news, format_countdown, parse_time_slot, save_image_upload, find_recycling_facilities,
                   accepted_item_types)
import lifecycle
import procedures  # noqa: F401
import api  # noqa: F401

# Conditions that are still worth giving away on the marketplace
LISTABLE_CONDITIONS = {ItemCondition.WORKING.value, ItemCondition.DAMAGED.value}


def _form_errors(form):
    return jsonify({'success': False, 'errors': form.errors}), 400


def _not_found(what):
    return jsonify({'success': False, 'message': f'{what} not found'}), 404


def _uploaded(field, subfolder, max_size=(1024, 1024)):
    """Store the file in ``field`` if one was sent; returns its public URL or None"""
    if not isinstance(field.data, FileStorage) or not field.data.filename:
        return None
    path = save_image_upload(field.data, subfolder, max_size)
    return f"/uploads/{path}" if path else None


def admin_required(role=AdminRole.MODERATOR.value):
    """Allow the view only for signed-in admins holding ``role`` or higher; exposes ``g.admin_store``"""
    def decorator(view):
        @wraps(view)
        @login_required
        def wrapped(*args, **kwargs):
            admin_store = RoleAuthorizer(request_store()).admin_store(role)
            if admin_store is None:
                current_app.logger.warning(f"User {current_user.id} denied {request.path}: requires {role}")
                return jsonify({'success': False, 'message': 'Admin access required'}), 403
            g.admin_store = admin_store
            return view(*args, **kwargs)
        return wrapped
    return decorator


@app.errorhandler(BackendError)
def handle_backend_error(e):
    db.session.rollback()
    current_app.logger.error(f"Backend error on {request.path}: {str(e)}")
    return jsonify({'success': False, 'message': 'The service is temporarily unavailable. Please try again.'}), 503


@app.errorhandler(PermissionDenied)
def handle_permission_denied(e):
    db.session.rollback()
    current_app.logger.warning(f"Permission denied on {request.path}: {str(e)}")
    return jsonify({'success': False, 'message': 'Permission denied'}), 403


@app.errorhandler(InvalidTransition)
def handle_invalid_transition(e):
    db.session.rollback()
    current_app.logger.warning(f"Invalid status change on {request.path}: {str(e)}")
    return jsonify({'success': False, 'message': str(e)}), 409


@app.errorhandler(TransitionDenied)
def handle_transition_denied(e):
    db.session.rollback()
    current_app.logger.warning(f"Status change denied on {request.path}: {str(e)}")
    return jsonify({'success': False, 'message': str(e)}), 403


@app.errorhandler(FunctionError)
def handle_function_error(e):
    db.session.rollback()
    current_app.logger.error(f"Function error on {request.path}: {str(e)}")
    return jsonify({'success': False, 'message': str(e)}), e.status


# Uploaded images
@app.route('/uploads/<path:filename>')
def uploaded_file(filename):
    return send_from_directory(current_app.config['UPLOAD_FOLDER'], filename)


# User registration
@app.route('/api/auth/register', methods=['POST'])
def register():
    form = RegisterForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    store = request_store()
    user = store.elevated().insert('users', {
        'email': form.email.data.strip().lower(),
        'full_name': form.full_name.data or None,
        'password_hash': generate_password_hash(form.password.data)
    })
    login_user(user)
    store.auth.sign_in(user)
    current_app.logger.info(f"Registered user {user.id}")
    return jsonify({'success': True, 'user': user.to_dict()}), 201


# User login
@app.route('/api/auth/login', methods=['POST'])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    user = User.query.filter_by(email=form.email.data.strip().lower()).first()
    if user is None or not user.check_password(form.password.data):
        return jsonify({'success': False, 'message': 'Invalid email or password.'}), 401

    login_user(user)
    request_store().auth.sign_in(user)
    return jsonify({'success': True, 'user': user.to_dict()})


@app.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    request_store().auth.sign_out()
    return jsonify({'success': True})


@app.route('/api/auth/password-reset/request', methods=['POST'])
def request_password_reset():
    form = PasswordResetRequestForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    request_store().invoke_function('send-password-reset-otp', {'email': form.email.data})
    return jsonify({'success': True, 'message': 'If the address is registered, a reset code has been sent.'})


@app.route('/api/auth/password-reset/confirm', methods=['POST'])
def confirm_password_reset():
    form = PasswordResetForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    reset = request_store().call_procedure('reset_password_with_otp', {
        'email': form.email.data,
        'otp': form.otp.data,
        'new_password': form.new_password.data
    })
    if not reset:
        return jsonify({'success': False, 'message': 'Invalid or expired code.'}), 400
    return jsonify({'success': True})


# Profile
@app.route('/api/profile', methods=['GET'])
@login_required
def profile():
    return jsonify({'success': True, 'profile': current_user.to_dict()})


@app.route('/api/profile', methods=['PUT'])
@login_required
def update_profile():
    form = ProfileForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    user = request_store().update('users', current_user.id, {'full_name': form.full_name.data})
    return jsonify({'success': True, 'profile': user.to_dict()})


@app.route('/api/profile/avatar', methods=['POST'])
@login_required
def upload_avatar():
    form = AvatarForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    avatar_url = _uploaded(form.avatar, 'avatars', (256, 256))
    if avatar_url is None:
        return jsonify({'success': False, 'message': 'The file is not a valid image.'}), 400
    user = request_store().update('users', current_user.id, {'avatar_url': avatar_url})
    return jsonify({'success': True, 'profile': user.to_dict()})


@app.route('/api/profile/password', methods=['POST'])
@login_required
def change_password():
    form = PasswordChangeForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    if not current_user.check_password(form.current_password.data):
        return jsonify({'success': False, 'message': 'Current password is incorrect.'}), 400
    request_store().update('users', current_user.id, {'password_hash': generate_password_hash(form.new_password.data)})
    current_app.logger.info(f"User {current_user.id} changed their password")
    return jsonify({'success': True})


# Offline mode
def _offline_timer():
    return SessionTimer(request_store(), minutes=current_app.config['OFFLINE_SESSION_MINUTES'])


def _offline_status(timer):
    status = timer.to_dict()
    status['countdown'] = format_countdown(timer.remaining)
    return status


@app.route('/api/offline/status')
@login_required
def offline_status():
    timer = _offline_timer()
    timer.check_active(current_user.id)
    return jsonify({'success': True, **_offline_status(timer)})


@app.route('/api/offline/start', methods=['POST'])
@login_required
def start_offline():
    timer = _offline_timer()
    if timer.start(current_user.id) is None:
        return jsonify({'success': False, 'message': 'Could not start offline mode. Please try again.'}), 503
    return jsonify({'success': True, **_offline_status(timer)}), 201


@app.route('/api/offline/end', methods=['POST'])
@login_required
def end_offline():
    timer = _offline_timer()
    timer.check_active(current_user.id)
    if not timer.end(current_user.id):
        return jsonify({'success': False, 'message': 'Could not end offline mode. Please try again.',
                        **_offline_status(timer)}), 503
    return jsonify({'success': True, **_offline_status(timer)})


@app.route('/api/offline/features')
@login_required
def offline_features():
    timer = _offline_timer()
    timer.check_active(current_user.id)
    return jsonify({'success': True, 'features': timer.features().to_dict()})


# E-waste items
@app.route('/api/items')
@login_required
def list_items():
    items = request_store().query('e_waste_items', order='-created_at')
    return jsonify({
        'success': True,
        'items': [item.to_dict() for item in items],
        'estimated_carbon_saved': round(sum(item.to_dict()['estimated_carbon_saved'] for item in items), 1)
    })


@app.route('/api/items', methods=['POST'])
@login_required
@offline_guard('can_register_items')
def register_item():
    form = RegisterItemForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    store = request_store()
    image_url = _uploaded(form.image, 'items')
    item = store.insert('e_waste_items', {
        'name': form.name.data,
        'category': form.category.data,
        'condition': form.condition.data,
        'description': form.description.data or None,
        'weight': form.weight.data,
        'image_url': image_url
    })

    listing = None
    if item.condition in LISTABLE_CONDITIONS:
        try:
            listing = store.insert('marketplace_listings', {
                'title': item.name,
                'description': item.description,
                'price': 0.0,
                'is_free': True,
                'type': item.category,
                'condition': item.condition,
                'location': form.location.data or 'Not specified',
                'image_url': image_url
            })
        except (BackendError, PermissionDenied) as e:
            # The item is registered either way
            current_app.logger.warning(f"Could not list item {item.id} on the marketplace: {str(e)}")

    return jsonify({
        'success': True,
        'item': item.to_dict(),
        'listing': listing.to_dict() if listing else None
    }), 201


# Collection requests
@app.route('/api/collection-requests')
@login_required
def list_collection_requests():
    collection_requests = request_store().query('collection_requests', order='-created_at')
    return jsonify({'success': True, 'collection_requests': [r.to_dict() for r in collection_requests]})


@app.route('/api/collection-requests', methods=['POST'])
@login_required
@offline_guard('can_schedule_collection')
def create_collection_request():
    form = CollectionRequestForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    store = request_store()
    item_ids = form.item_ids.data
    items = store.query('e_waste_items', {'id__in': item_ids}) if item_ids else []

    collection_request = store.insert('collection_requests', {
        'address': form.address.data,
        'city': form.city.data,
        'state': form.state.data or 'N/A',
        'postal_code': form.postal_code.data,
        'scheduled_date': parse_time_slot(form.date.data, form.time_slot.data),
        'notes': form.notes.data or None,
        'items': items
    })
    current_app.logger.info(f"Collection request {collection_request.id} scheduled by user {current_user.id}")
    return jsonify({'success': True, 'collection_request': collection_request.to_dict()}), 201


@app.route('/api/collection-requests/<int:request_id>/cancel', methods=['POST'])
@login_required
def cancel_collection_request(request_id):
    store = request_store()
    record = lifecycle.cancel(store, 'collection_requests', request_id)
    if record is None:
        # Not the owner's request; moderators may still cancel it
        admin_store = RoleAuthorizer(store).admin_store()
        if admin_store is not None:
            record = lifecycle.cancel(admin_store, 'collection_requests', request_id)
    if record is None:
        return _not_found('Collection request')
    return jsonify({'success': True, 'collection_request': record.to_dict()})


# Dumping reports
@app.route('/api/dumping-reports')
@login_required
def list_dumping_reports():
    reports = request_store().query('dumping_reports', order='-created_at')
    return jsonify({'success': True, 'reports': [r.to_dict() for r in reports]})


@app.route('/api/dumping-reports', methods=['POST'])
@login_required
def create_dumping_report():
    form = DumpingReportForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    store = request_store()
    analysis = store.invoke_function('analyze-dumping-report', {
        'location': form.location.data,
        'wasteType': form.waste_type.data,
        'description': form.description.data
    })
    report = store.insert('dumping_reports', {
        'description': form.description.data,
        'location': form.location.data,
        'latitude': form.latitude.data,
        'longitude': form.longitude.data,
        'waste_type': form.waste_type.data,
        'severity': analysis['severity'],
        'recommendations': analysis['recommendations'],
        'image_url': _uploaded(form.image, 'reports')
    })
    return jsonify({'success': True, 'report': report.to_dict(), 'analysis': analysis}), 201


# Marketplace
@app.route('/api/marketplace')
@offline_guard('can_access_marketplace')
def marketplace():
    listings = request_store().query('marketplace_listings', {'status': 'available'}, order='-created_at')
    return jsonify({'success': True, 'listings': [listing.to_dict() for listing in listings]})


@app.route('/api/marketplace/mine')
@login_required
def my_listings():
    listings = request_store().query('marketplace_listings', {'user_id': current_user.id}, order='-created_at')
    return jsonify({'success': True, 'listings': [listing.to_dict() for listing in listings]})


@app.route('/api/marketplace', methods=['POST'])
@login_required
@offline_guard('can_access_marketplace')
def create_listing():
    form = MarketplaceListingForm()
    if not form.validate_on_submit():
        return _form_errors(form)

    price = form.price.data or 0.0
    listing = request_store().insert('marketplace_listings', {
        'title': form.title.data,
        'description': form.description.data or None,
        'price': price,
        'is_free': price == 0,
        'type': form.type.data,
        'condition': form.condition.data,
        'location': form.location.data or 'Not specified',
        'image_url': _uploaded(form.image, 'listings')
    })
    return jsonify({'success': True, 'listing': listing.to_dict()}), 201


@app.route('/api/marketplace/<int:listing_id>/availability', methods=['POST'])
@login_required
@offline_guard('can_access_marketplace')
def set_listing_availability(listing_id):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('available'), bool):
        return jsonify({'success': False, 'message': 'available must be true or false'}), 400
    listing = lifecycle.set_availability(request_store(), listing_id, data['available'])
    if listing is None:
        return _not_found('Listing')
    return jsonify({'success': True, 'listing': listing.to_dict()})


# Wallet
def _wallet_balance(store):
    rows = store.query('wallet_balances', {'user_id': current_user.id, 'currency': 'ZAR'}, limit=1)
    return rows[0] if rows else None


@app.route('/api/wallet')
@login_required
@offline_guard('can_access_wallet')
def wallet():
    store = request_store()
    balance = _wallet_balance(store)
    transactions = store.query('wallet_transactions', order='-created_at', limit=50)
    return jsonify({
        'success': True,
        'balance': balance.to_dict() if balance else {'user_id': current_user.id, 'balance': 0.0, 'currency': 'ZAR'},
        'transactions': [t.to_dict() for t in transactions]
    })


@app.route('/api/wallet/deposit', methods=['POST'])
@login_required
@offline_guard('can_access_wallet')
def wallet_deposit():
    form = WalletDepositForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    payment = request_store().invoke_function('create-payment', {
        'amount': form.amount.data,
        'currency': 'ZAR',
        'description': 'Wallet deposit'
    })
    return jsonify({'success': True, **payment}), 201


@app.route('/api/wallet/withdraw', methods=['POST'])
@login_required
@offline_guard('can_access_wallet')
def wallet_withdraw():
    store = request_store()
    balance = _wallet_balance(store)
    form = WalletWithdrawForm(balance=balance.balance if balance else 0.0)
    if not form.validate_on_submit():
        return _form_errors(form)

    amount = form.amount.data
    if not store.call_procedure('verify_sufficient_balance', {'user_id': current_user.id, 'amount': amount}):
        return jsonify({'success': False, 'message': 'Insufficient balance.'}), 400

    service = store.elevated()
    with service.atomic():
        transaction = service.insert('wallet_transactions', {
            'user_id': current_user.id,
            'amount': amount,
            'currency': 'ZAR',
            'description': f"Withdrawal to {dict(form.method.choices)[form.method.data]}",
            'type': 'withdrawal',
            'status': 'pending',
            'payment_method': form.method.data
        })
        service.update('wallet_balances', balance.id, {'balance': balance.balance - amount})
    current_app.logger.info(f"User {current_user.id} requested a withdrawal of R{amount:.2f}")
    return jsonify({'success': True, 'transaction': transaction.to_dict()}), 201


@app.route('/api/stripe/webhook', methods=['POST'])
def stripe_webhook():
    result = request_store().invoke_function('stripe-webhook', {
        'body': request.get_data(as_text=True),
        'signature': request.headers.get('Stripe-Signature')
    })
    return jsonify(result)


# AI assistant
@app.route('/api/assistant/chat', methods=['POST'])
@offline_guard('can_use_ai_assistant')
def assistant_chat():
    form = ChatForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    result = request_store().invoke_function('ai-assistant', {
        'message': form.message.data,
        'conversationId': form.conversation_id.data
    })
    return jsonify({'success': True, **result})


@app.route('/api/assistant/conversations')
@login_required
def assistant_conversations():
    conversations = request_store().query('chat_conversations', order='-updated_at')
    return jsonify({'success': True, 'conversations': [c.to_dict() for c in conversations]})


@app.route('/api/assistant/conversations/<int:conversation_id>/messages')
@login_required
def assistant_messages(conversation_id):
    store = request_store()
    if store.get('chat_conversations', conversation_id) is None:
        return _not_found('Conversation')
    messages = store.query('chat_messages', {'conversation_id': conversation_id}, order='id')
    return jsonify({'success': True, 'messages': [m.to_dict() for m in messages]})


# Notifications
@app.route('/api/notifications')
@login_required
def notifications():
    rows = request_store().query('notifications', order='-created_at', limit=50)
    return jsonify({'success': True, 'notifications': [n.to_dict() for n in rows]})


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notification_id):
    notification = request_store().update('notifications', notification_id, {'read': True})
    if notification is None:
        return _not_found('Notification')
    return jsonify({'success': True, 'notification': notification.to_dict()})


# Information pages
@app.route('/api/news')
@offline_guard('can_view_information')
def news():
    return jsonify({'success': True, 'news': get_ewaste_news(request.args.get('limit', 5, type=int))})


# Recycle locator
@app.route('/api/recycling-facilities')
@offline_guard('can_view_recycling_map')
def recycling_facilities():
    sort = request.args.get('sort', 'asc')
    if sort not in ('asc', 'desc'):
        return jsonify({'success': False, 'message': 'sort must be asc or desc'}), 400

    latitude = request.args.get('lat', type=float)
    longitude = request.args.get('lng', type=float)
    location = None
    if latitude is not None and longitude is not None:
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            return jsonify({'success': False, 'message': 'Invalid coordinates'}), 400
        location = (latitude, longitude)

    facilities = find_recycling_facilities(request.args.get('q', ''), request.args.get('item'), sort, location)
    return jsonify({'success': True, 'facilities': facilities, 'item_types': accepted_item_types()})


# Admin
@app.route('/api/admin/status')
@login_required
def admin_status():
    authorizer = RoleAuthorizer(request_store())
    role = authorizer.role_of()
    return jsonify({'success': True, 'is_admin': role is not None, 'role': role})


@app.route('/api/admin/initialize', methods=['POST'])
@login_required
def initialize_admin():
    if not RoleAuthorizer(request_store()).initialize_first_admin(current_user.email):
        return jsonify({'success': False, 'message': 'An administrator already exists.'}), 409
    return jsonify({'success': True, 'role': AdminRole.SUPER_ADMIN.value})


@app.route('/api/admin/analytics')
@admin_required()
def admin_analytics():
    return jsonify({'success': True, 'analytics': request_store().call_procedure('get_admin_analytics')})


@app.route('/api/admin/users')
@admin_required(AdminRole.ADMIN.value)
def admin_users():
    admins = g.admin_store.query('admin_users', {'is_active': True}, order='created_at')
    return jsonify({'success': True, 'admins': [a.to_dict() for a in admins]})


@app.route('/api/admin/users/grant', methods=['POST'])
@admin_required(AdminRole.ADMIN.value)
def admin_grant_role():
    form = AdminRoleForm()
    if not form.validate_on_submit():
        return _form_errors(form)
    if not RoleAuthorizer(request_store()).grant_role(form.email.data.strip().lower(), form.role.data):
        return jsonify({'success': False, 'message': 'You cannot grant that role to this user.'}), 403
    return jsonify({'success': True})


@app.route('/api/admin/users/<int:user_id>/revoke', methods=['POST'])
@admin_required(AdminRole.ADMIN.value)
def admin_revoke_role(user_id):
    if not RoleAuthorizer(request_store()).revoke_role(user_id):
        return jsonify({'success': False, 'message': 'You cannot revoke this role.'}), 403
    return jsonify({'success': True})


@app.route('/api/admin/collection-requests')
@admin_required()
def admin_collection_requests():
    filter = {'status': request.args['status']} if request.args.get('status') else None
    rows = g.admin_store.query('collection_requests', filter, order='-created_at')
    return jsonify({'success': True, 'collection_requests': [r.to_dict() for r in rows]})


@app.route('/api/admin/collection-requests/<int:request_id>/advance', methods=['POST'])
@admin_required()
def admin_advance_collection_request(request_id):
    record = lifecycle.advance(g.admin_store, 'collection_requests', request_id)
    if record is None:
        return _not_found('Collection request')
    current_app.logger.info(f"Collection request {request_id} moved to {record.status} by user {current_user.id}")
    return jsonify({'success': True, 'collection_request': record.to_dict()})


@app.route('/api/admin/dumping-reports')
@admin_required()
def admin_dumping_reports():
    filter = {'status': request.args['status']} if request.args.get('status') else None
    rows = g.admin_store.query('dumping_reports', filter, order='-created_at')
    return jsonify({'success': True, 'reports': [r.to_dict() for r in rows]})


@app.route('/api/admin/dumping-reports/<int:report_id>/advance', methods=['POST'])
@admin_required()
def admin_advance_dumping_report(report_id):
    record = lifecycle.advance(g.admin_store, 'dumping_reports', report_id)
    if record is None:
        return _not_found('Dumping report')
    current_app.logger.info(f"Dumping report {report_id} moved to {record.status} by user {current_user.id}")
    return jsonify({'success': True, 'report': record.to_dict()})


@app.route('/api/admin/notifications/run', methods=['POST'])
@admin_required(AdminRole.ADMIN.value)
def admin_run_scheduled_notifications():
    return jsonify({'success': True, **request_store().invoke_function('scheduled-notifications')})
