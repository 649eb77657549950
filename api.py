import json
import logging
import secrets
from datetime import timedelta

import requests
import resend
import stripe
from flask import current_app

from errors import FunctionError
from store import function
from utils import eco_points_for_payment

logger = logging.getLogger(__name__)

SEVERITIES = ('low', 'medium', 'high', 'critical')

ASSISTANT_SYSTEM_PROMPT = (
    "You are E-Cycle's assistant. You help people recycle, reuse and safely dispose of "
    "electronic waste. Keep answers practical and short, and mention data wiping and "
    "certified recyclers where relevant."
)

# Keyword answers used when the AI gateway is unavailable
FALLBACK_ANSWERS = [
    (('smartphone', 'phone', 'mobile'),
     "For smartphones and mobile phones:\n\n1. Remove personal data and perform a factory reset\n"
     "2. Remove the battery if possible\n3. Take to certified e-waste recyclers or manufacturer take-back programs\n"
     "4. Many retailers offer trade-in programs\n5. Never throw in regular trash"),
    (('laptop', 'computer', 'pc'),
     "For laptops and computers:\n\n1. Back up important data and wipe the hard drive completely\n"
     "2. Remove batteries if possible\n3. Donate if still functional to schools or charities\n"
     "4. Take to certified e-waste recycling centers"),
    (('battery', 'batteries'),
     "For batteries:\n\n1. Never throw batteries in regular trash\n2. Sort by type: alkaline, lithium-ion, lead-acid\n"
     "3. Take to designated battery collection points\n4. Lithium-ion batteries need special handling"),
    (('tv', 'television', 'monitor'),
     "For TVs and monitors:\n\n1. Check if still functional and consider donation\n"
     "2. Never put in regular trash due to lead and mercury content\n3. Take to certified e-waste recyclers"),
    (('printer', 'scanner'),
     "For printers and scanners:\n\n1. Remove ink and toner cartridges and recycle them separately\n"
     "2. Take to e-waste recycling centers\n3. Many office supply stores accept old printers"),
    (('cable', 'charger', 'cord'),
     "For cables and chargers:\n\n1. They contain copper, so keep them out of regular trash\n"
     "2. Take to e-waste collection points\n3. Many electronics stores accept old cables"),
    (('recycle', 'where', 'location'),
     "To find e-waste recycling locations:\n\n1. Use the Recycling Map to find nearby facilities\n"
     "2. Check with local waste management companies\n3. Look for community e-waste collection events"),
    (('data', 'security', 'personal'),
     "Before disposing of a device:\n\n1. Back up your files\n2. Sign out of all accounts\n"
     "3. Perform a factory reset\n4. Remove memory cards and SIM cards"),
]

DEFAULT_ANSWER = (
    "I can help with recycling phones, computers, batteries, TVs, printers and cables, with finding "
    "drop-off locations and with wiping your data before disposal. What would you like to know?"
)

ANALYSIS_FALLBACK = ('Unable to perform AI analysis. Please ensure all fields are filled '
                     'correctly and try again.')


def fallback_answer(question):
    lower_question = question.lower()
    for keywords, answer in FALLBACK_ANSWERS:
        if any(keyword in lower_question for keyword in keywords):
            return answer
    return DEFAULT_ANSWER


def chat_completion(messages, temperature=0.7):
    """
    Send a chat completion request to the AI gateway

    Args:
        messages (list): OpenAI-style role/content dicts
        temperature (float): Sampling temperature

    Returns:
        str: Content of the first choice
    """
    api_key = current_app.config.get('AI_GATEWAY_API_KEY')
    if not api_key:
        raise FunctionError('AI gateway API key not configured', status=503)

    try:
        response = requests.post(
            current_app.config['AI_GATEWAY_URL'],
            headers={'Authorization': f"Bearer {api_key}", 'Content-Type': 'application/json'},
            json={'model': current_app.config['AI_MODEL'], 'messages': messages, 'temperature': temperature},
            timeout=30
        )
    except requests.RequestException as e:
        raise FunctionError(f"AI gateway unreachable: {str(e)}", status=502)

    if not response.ok:
        logger.error(f"AI gateway error: {response.text}")
        raise FunctionError(f"AI gateway error: {response.status_code}", status=502)

    try:
        return response.json()['choices'][0]['message']['content']
    except (ValueError, KeyError, IndexError) as e:
        raise FunctionError(f"Unexpected AI gateway response: {str(e)}", status=502)


@function('ai-assistant')
def ai_assistant(store, caller, payload):
    message = (payload.get('message') or '').strip()
    if not message:
        raise FunctionError('Message is required', status=400)

    conversation = None
    history = []
    if caller is not None:
        conversation_id = payload.get('conversationId')
        if conversation_id:
            rows = store.query('chat_conversations', {'id': conversation_id, 'user_id': caller.id}, limit=1)
            conversation = rows[0] if rows else None
        if conversation is None:
            conversation = store.insert('chat_conversations', {'user_id': caller.id, 'title': message[:60]})
        history = [
            {'role': m.role, 'content': m.content}
            for m in store.query('chat_messages', {'conversation_id': conversation.id}, order='id')
        ]

    try:
        reply = chat_completion(
            [{'role': 'system', 'content': ASSISTANT_SYSTEM_PROMPT}] + history + [{'role': 'user', 'content': message}]
        )
        source = 'ai'
    except FunctionError as e:
        logger.warning(f"{str(e)}, using fallback answer instead")
        reply = fallback_answer(message)
        source = 'fallback'

    if conversation is not None:
        with store.atomic():
            store.insert('chat_messages', {'conversation_id': conversation.id, 'user_id': caller.id,
                                           'role': 'user', 'content': message})
            store.insert('chat_messages', {'conversation_id': conversation.id, 'user_id': caller.id,
                                           'role': 'assistant', 'content': reply})
            store.update('chat_conversations', conversation.id, {'updated_at': store.now()})

    return {
        'response': reply,
        'source': source,
        'conversationId': conversation.id if conversation is not None else None
    }


@function('analyze-dumping-report')
def analyze_dumping_report(store, caller, payload):
    """
    Ask the AI gateway for a severity level and cleanup advice for a dumping site

    Returns:
        dict: severity (low/medium/high/critical) and recommendations; when the
        analysis cannot run, severity is medium and an error key is included
    """
    prompt = (
        "You are an environmental expert analyzing illegal e-waste dumping sites.\n\n"
        f"Site Information:\n- Location: {payload.get('location', '')}\n"
        f"- Waste Type: {payload.get('wasteType', '')}\n- Description: {payload.get('description', '')}\n\n"
        "Please analyze this dumping site and provide:\n"
        "1. A severity level (low, medium, high, or critical)\n"
        "2. Detailed recommendations for handling and cleanup\n\n"
        "Return your response in this exact JSON format:\n"
        '{"severity": "low|medium|high|critical", "recommendations": "detailed recommendations text"}'
    )
    try:
        content = chat_completion([
            {'role': 'system', 'content': 'You are an environmental expert specializing in e-waste management '
                                          'and hazardous material assessment. Always respond in valid JSON format.'},
            {'role': 'user', 'content': prompt}
        ])
    except FunctionError as e:
        logger.error(f"Error in analyze-dumping-report: {str(e)}")
        return {'error': str(e), 'severity': 'medium', 'recommendations': ANALYSIS_FALLBACK}

    try:
        analysis = json.loads(content)
        severity = str(analysis.get('severity', 'medium')).lower()
        recommendations = analysis.get('recommendations') or content
    except (ValueError, AttributeError):
        logger.warning(f"Failed to parse AI response: {content}")
        severity, recommendations = 'medium', content

    if severity not in SEVERITIES:
        severity = 'medium'
    return {'severity': severity, 'recommendations': recommendations}


def _stripe():
    api_key = current_app.config.get('STRIPE_SECRET_KEY')
    if not api_key:
        raise FunctionError('Payments are not configured', status=503)
    stripe.api_key = api_key
    return stripe


@function('create-payment')
def create_payment(store, caller, payload):
    if caller is None:
        raise FunctionError('Login required', status=401)
    try:
        amount = float(payload.get('amount'))
    except (TypeError, ValueError):
        raise FunctionError('A valid amount is required', status=400)
    currency = (payload.get('currency') or 'ZAR').upper()
    description = payload.get('description') or 'Wallet deposit'

    try:
        intent = _stripe().PaymentIntent.create(
            amount=int(round(amount * 100)),
            currency=currency.lower(),
            metadata={'user_id': str(caller.id), 'email': caller.email, 'description': description}
        )
    except stripe.StripeError as e:
        logger.error(f"Error creating payment: {str(e)}")
        raise FunctionError('Could not create payment', status=502)

    with store.atomic():
        store.insert('payments', {
            'user_id': caller.id,
            'amount': amount,
            'currency': currency,
            'payment_intent_id': intent['id'],
            'description': description,
            'status': 'pending'
        })
        store.insert('wallet_transactions', {
            'user_id': caller.id,
            'amount': amount,
            'currency': currency,
            'description': description,
            'type': 'deposit',
            'status': 'pending',
            'payment_intent_id': intent['id'],
            'payment_method': 'card'
        })
    logger.info(f"Created payment intent {intent['id']} for user {caller.id}")
    return {'clientSecret': intent['client_secret'], 'paymentIntentId': intent['id']}


def _credit_wallet(store, user_id, amount, currency):
    rows = store.query('wallet_balances', {'user_id': user_id, 'currency': currency}, limit=1)
    if rows:
        store.update('wallet_balances', rows[0].id, {'balance': (rows[0].balance or 0.0) + amount})
    else:
        store.insert('wallet_balances', {'user_id': user_id, 'balance': amount, 'currency': currency})


@function('stripe-webhook')
def stripe_webhook(store, caller, payload):
    signature = payload.get('signature')
    if not signature:
        raise FunctionError('Missing stripe signature', status=400)
    webhook_secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
    if not webhook_secret:
        raise FunctionError('Webhook secret not configured', status=503)

    try:
        event = stripe.Webhook.construct_event(payload.get('body', ''), signature, webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Webhook signature verification failed: {str(e)}")
        raise FunctionError('Invalid signature', status=400)

    logger.info(f"Stripe webhook event: {event['type']}")
    intent = event['data']['object']

    if event['type'] == 'payment_intent.succeeded':
        payments = store.query('payments', {'payment_intent_id': intent['id']}, limit=1)
        if not payments or payments[0].status == 'completed':
            # Unknown intent or a redelivered event
            return {'received': True}
        payment = payments[0]
        points = eco_points_for_payment(intent['amount'])

        with store.atomic():
            store.update('payments', payment.id, {'status': 'completed'})
            store.update_where('wallet_transactions', {'payment_intent_id': intent['id']}, {'status': 'completed'})
            _credit_wallet(store, payment.user_id, payment.amount, payment.currency)
            store.call_procedure('add_eco_points', {'user_id': payment.user_id, 'points': points})

        user = store.get('users', payment.user_id)
        store.invoke_function('send-notification', {
            'userId': payment.user_id,
            'email': user.email if user else None,
            'title': 'Payment Successful',
            'message': f"Your payment of R{payment.amount:.2f} has been processed successfully. "
                       f"You earned {points} eco points!",
            'type': 'payment_success'
        })

    elif event['type'] == 'payment_intent.payment_failed':
        with store.atomic():
            store.update_where('payments', {'payment_intent_id': intent['id']}, {'status': 'failed'})
            store.update_where('wallet_transactions', {'payment_intent_id': intent['id']}, {'status': 'failed'})

    return {'received': True}


def send_email(to, subject, html):
    """Send an email through Resend; returns False when email is not configured or fails"""
    api_key = current_app.config.get('RESEND_API_KEY')
    if not api_key or not to:
        logger.info(f"Email to {to} skipped: Resend not configured")
        return False
    resend.api_key = api_key
    try:
        resend.Emails.send({
            'from': current_app.config['MAIL_FROM'],
            'to': [to],
            'subject': subject,
            'html': html
        })
    except Exception as e:
        logger.error(f"Error sending email to {to}: {str(e)}")
        return False
    return True


@function('send-notification')
def send_notification(store, caller, payload):
    title = payload.get('title')
    message = payload.get('message')
    if not title or not message:
        raise FunctionError('Title and message are required', status=400)

    store.insert('notifications', {
        'user_id': payload.get('userId'),
        'title': title,
        'message': message,
        'type': payload.get('type') or 'general'
    })

    reminder = ''
    if payload.get('type') == 'collection_reminder':
        reminder = "<p>Don't forget to prepare your e-waste items for collection!</p>"
    email_sent = send_email(
        payload.get('email'),
        f"E-Cycle: {title}",
        f"<h2>{title}</h2><p>{message}</p>{reminder}"
    )
    return {'success': True, 'emailSent': email_sent}


@function('send-password-reset-otp')
def send_password_reset_otp(store, caller, payload):
    email = (payload.get('email') or '').strip().lower()
    if not email:
        raise FunctionError('Email is required', status=400)

    otp = str(100000 + secrets.randbelow(900000))
    # Expires in 10 minutes
    store.insert('password_reset_otps', {
        'email': email,
        'otp': otp,
        'expires_at': store.now() + timedelta(minutes=10),
        'used': False
    })
    send_email(email, 'E-Cycle: Password reset code',
               f"<p>Your password reset code is:</p><h2>{otp}</h2><p>It expires in 10 minutes.</p>")
    # Same answer whether or not the address has an account
    return {'success': True}


@function('scheduled-notifications')
def scheduled_notifications(store, caller, payload):
    """Remind owners of confirmed collections scheduled for tomorrow and purge old notifications"""
    now = store.now()
    tomorrow_start = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    tomorrow_end = tomorrow_start + timedelta(days=1)

    upcoming = store.query('collection_requests', {
        'status': 'confirmed',
        'scheduled_date__gte': tomorrow_start,
        'scheduled_date__lt': tomorrow_end
    })
    logger.info(f"Found {len(upcoming)} upcoming collections")

    for collection in upcoming:
        user = store.get('users', collection.user_id)
        store.invoke_function('send-notification', {
            'userId': collection.user_id,
            'email': user.email if user else None,
            'title': 'Collection Reminder',
            'message': f"Your e-waste collection is scheduled for tomorrow at {collection.address}. "
                       f"Please ensure your items are ready for pickup.",
            'type': 'collection_reminder'
        })

    stale = store.query('notifications', {'created_at__lt': now - timedelta(days=30)})
    with store.atomic():
        for notification in stale:
            store.delete('notifications', notification.id)

    return {'success': True, 'notificationsSent': len(upcoming), 'notificationsPurged': len(stale)}
