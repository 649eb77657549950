import pytest

from app import app, db
from errors import BackendError
from models import PasswordResetOtp, WalletBalance, MarketplaceListing, OfflineSession, CollectionRequest
from store import DataStore
import routes
from conftest import add_user, login


def client_for(email, **kwargs):
    add_user(email, **kwargs)
    client = app.test_client()
    login(client, email)
    return client


def new_collection_request(client, **overrides):
    payload = {
        'address': '12 Long Street',
        'city': 'Cape Town',
        'postal_code': '8001',
        'date': '2030-05-02',
        'time_slot': '09:00 - 11:00'
    }
    payload.update(overrides)
    return client.post('/api/collection-requests', json=payload)


def test_register_login_and_profile(client):
    resp = client.post('/api/auth/register', json={
        'email': 'Naledi@Example.com',
        'full_name': 'Naledi Dlamini',
        'password': 'secret123',
        'confirm_password': 'secret123'
    })
    assert resp.status_code == 201
    assert resp.get_json()['user']['email'] == 'naledi@example.com'

    profile = client.get('/api/profile').get_json()['profile']
    assert profile['full_name'] == 'Naledi Dlamini'
    assert profile['eco_points'] == 0

    assert client.put('/api/profile', json={'full_name': 'Naledi M.'}).get_json()['profile']['full_name'] == 'Naledi M.'

    client.post('/api/auth/logout')
    assert client.get('/api/profile').status_code == 401
    login(client, 'naledi@example.com', 'secret123')


def test_register_rejects_duplicates_and_mismatched_passwords(client):
    add_user('taken@example.com')

    resp = client.post('/api/auth/register', json={
        'email': 'taken@example.com', 'password': 'secret123', 'confirm_password': 'secret123'
    })
    assert resp.status_code == 400
    assert 'email' in resp.get_json()['errors']

    resp = client.post('/api/auth/register', json={
        'email': 'new@example.com', 'password': 'secret123', 'confirm_password': 'other123'
    })
    assert 'confirm_password' in resp.get_json()['errors']


def test_bad_credentials(client):
    add_user('lindiwe@example.com')
    resp = client.post('/api/auth/login', json={'email': 'lindiwe@example.com', 'password': 'wrong-password'})
    assert resp.status_code == 401
    assert resp.get_json()['success'] is False


def test_login_required(client):
    resp = client.get('/api/items')
    assert resp.status_code == 401
    assert resp.get_json() == {'success': False, 'message': 'Login required'}


def test_password_change(client):
    client = client_for('lindiwe@example.com')

    resp = client.post('/api/profile/password', json={
        'current_password': 'nope-nope', 'new_password': 'fresh-pass', 'confirm_password': 'fresh-pass'
    })
    assert resp.status_code == 400

    resp = client.post('/api/profile/password', json={
        'current_password': 'password123', 'new_password': 'fresh-pass', 'confirm_password': 'fresh-pass'
    })
    assert resp.status_code == 200
    login(app.test_client(), 'lindiwe@example.com', 'fresh-pass')


def test_password_reset_with_code(client):
    add_user('kagiso@example.com')

    assert client.post('/api/auth/password-reset/request', json={'email': 'kagiso@example.com'}).status_code == 200
    with app.app_context():
        otp = PasswordResetOtp.query.filter_by(email='kagiso@example.com').one().otp
        db.session.remove()
    assert len(otp) == 6 and otp.isdigit()

    bad = client.post('/api/auth/password-reset/confirm', json={
        'email': 'kagiso@example.com', 'otp': '000000', 'new_password': 'brand-new'
    })
    assert bad.status_code == 400

    good = client.post('/api/auth/password-reset/confirm', json={
        'email': 'kagiso@example.com', 'otp': otp, 'new_password': 'brand-new'
    })
    assert good.status_code == 200
    login(client, 'kagiso@example.com', 'brand-new')

    # Codes are single use
    again = client.post('/api/auth/password-reset/confirm', json={
        'email': 'kagiso@example.com', 'otp': otp, 'new_password': 'another-one'
    })
    assert again.status_code == 400


def test_offline_mode_blocks_writes_but_not_information(client, monkeypatch):
    monkeypatch.setattr(routes, 'get_ewaste_news', lambda limit=5: [{'title': 'E-waste up 5%', 'link': 'https://example.com'}])
    client = client_for('sipho@example.com')

    started = client.post('/api/offline/start')
    assert started.status_code == 201
    body = started.get_json()
    assert body['is_offline'] is True
    assert body['time_remaining'] == 900
    assert body['countdown'] == '15:00'
    assert body['features']['canRegisterItems'] is False

    item = {'name': 'Nokia 3310', 'category': 'Mobile', 'condition': 'Working'}
    blocked = client.post('/api/items', json=item)
    assert blocked.status_code == 423
    assert client.get('/api/wallet').status_code == 423
    assert new_collection_request(client).status_code == 423
    assert client.get('/api/news').status_code == 200

    status = client.get('/api/offline/status').get_json()
    assert status['is_offline'] is True
    assert status['session']['is_active'] is True

    ended = client.post('/api/offline/end').get_json()
    assert ended['is_offline'] is False
    assert client.post('/api/offline/end').status_code == 200
    assert client.get('/api/offline/features').get_json()['features']['canRegisterItems'] is True
    assert client.post('/api/items', json=item).status_code == 201


def test_offline_end_failure_is_reported(client, monkeypatch):
    client = client_for('sipho@example.com')
    client.post('/api/offline/start')
    update_where = DataStore.update_where

    def broken_update_where(self, collection, filter, patch):
        raise BackendError("connection reset")

    monkeypatch.setattr(DataStore, 'update_where', broken_update_where)
    resp = client.post('/api/offline/end')

    assert resp.status_code == 503
    body = resp.get_json()
    assert body['success'] is False
    assert body['is_offline'] is True

    monkeypatch.setattr(DataStore, 'update_where', update_where)
    assert client.get('/api/offline/status').get_json()['is_offline'] is True
    assert client.post('/api/offline/end').get_json()['is_offline'] is False



def test_item_registration_lists_reusable_items(client):
    client = client_for('sipho@example.com')

    working = client.post('/api/items', json={'name': 'Nokia 3310', 'category': 'Mobile', 'condition': 'Working'})
    broken = client.post('/api/items', json={'name': 'Dead printer', 'category': 'Printer', 'condition': 'Not Working'})

    assert working.status_code == 201
    listing = working.get_json()['listing']
    assert listing['is_free'] is True and listing['price'] == 0.0
    assert listing['status'] == 'available'
    assert broken.get_json()['listing'] is None

    items = client.get('/api/items').get_json()
    assert len(items['items']) == 2
    assert items['estimated_carbon_saved'] == 120.0

    public = app.test_client().get('/api/marketplace').get_json()['listings']
    assert [entry['title'] for entry in public] == ['Nokia 3310']


def test_item_form_validation(client):
    client = client_for('sipho@example.com')
    resp = client.post('/api/items', json={'name': 'Thing', 'category': 'Spaceship', 'condition': 'Working'})
    assert resp.status_code == 400
    assert 'category' in resp.get_json()['errors']


def test_collection_request_schedule_and_cancel(client):
    owner = client_for('zodwa@example.com')
    stranger = client_for('themba@example.com')
    item_id = owner.post('/api/items', json={
        'name': 'Old laptop', 'category': 'Laptop', 'condition': 'Not Working'
    }).get_json()['item']['id']

    resp = new_collection_request(owner, item_ids=[item_id], time_slot='14:00 - 16:00')
    assert resp.status_code == 201
    created = resp.get_json()['collection_request']
    assert created['status'] == 'pending'
    assert created['scheduled_date'] == '2030-05-02T14:00:00'
    assert created['item_ids'] == [item_id]

    assert stranger.post(f"/api/collection-requests/{created['id']}/cancel").status_code == 404

    first = owner.post(f"/api/collection-requests/{created['id']}/cancel")
    second = owner.post(f"/api/collection-requests/{created['id']}/cancel")
    assert first.get_json()['collection_request']['status'] == 'cancelled'
    assert second.status_code == 200
    assert second.get_json()['collection_request']['status'] == 'cancelled'


def test_collection_request_rejects_unknown_time_slot(client):
    client = client_for('zodwa@example.com')
    resp = new_collection_request(client, time_slot='20:00 - 22:00')
    assert resp.status_code == 400
    assert 'time_slot' in resp.get_json()['errors']


@pytest.mark.parametrize("item_ids", [['abc'], [None], ['7', 'x']])
def test_collection_request_rejects_malformed_item_ids(client, item_ids):
    client = client_for('zodwa@example.com')
    resp = new_collection_request(client, item_ids=item_ids)

    assert resp.status_code == 400
    assert 'item_ids' in resp.get_json()['errors']
    with app.app_context():
        assert CollectionRequest.query.count() == 0
        db.session.remove()



def test_admin_bootstrap_and_request_review(client):
    boss = client_for('boss@example.com')
    owner = client_for('zodwa@example.com')

    assert owner.get('/api/admin/analytics').status_code == 403
    assert boss.get('/api/admin/status').get_json()['is_admin'] is False

    assert boss.post('/api/admin/initialize').status_code == 200
    assert owner.post('/api/admin/initialize').status_code == 409
    assert boss.get('/api/admin/status').get_json()['role'] == 'super_admin'

    request_id = new_collection_request(owner).get_json()['collection_request']['id']
    listing = boss.get('/api/admin/collection-requests?status=pending').get_json()['collection_requests']
    assert [r['id'] for r in listing] == [request_id]

    statuses = [
        boss.post(f'/api/admin/collection-requests/{request_id}/advance').get_json()['collection_request']['status']
        for _ in range(3)
    ]
    assert statuses == ['confirmed', 'in_progress', 'completed']
    assert boss.post(f'/api/admin/collection-requests/{request_id}/advance').status_code == 409
    assert owner.post(f'/api/collection-requests/{request_id}/cancel').status_code == 409

    analytics = {m['metric']: m['value'] for m in boss.get('/api/admin/analytics').get_json()['analytics']}
    assert analytics['completed_collection_requests'] == 1


def test_admin_role_management(client):
    boss = client_for('boss@example.com', admin_role='super_admin')
    helper = client_for('helper@example.com')

    assert helper.post('/api/admin/users/grant', json={'email': 'boss@example.com', 'role': 'moderator'}).status_code == 403

    granted = boss.post('/api/admin/users/grant', json={'email': 'helper@example.com', 'role': 'moderator'})
    assert granted.status_code == 200
    admins = boss.get('/api/admin/users').get_json()['admins']
    assert {a['email'] for a in admins} == {'boss@example.com', 'helper@example.com'}

    # Moderators can review but not manage roles
    assert helper.get('/api/admin/analytics').status_code == 200
    assert helper.get('/api/admin/users').status_code == 403

    helper_id = helper.get('/api/profile').get_json()['profile']['id']
    assert boss.post(f'/api/admin/users/{helper_id}/revoke').status_code == 200
    assert helper.get('/api/admin/analytics').status_code == 403


def test_dumping_report_falls_back_to_medium_severity(client):
    reporter = client_for('ruth@example.com')
    reviewer = client_for('mod@example.com', admin_role='moderator')

    resp = reporter.post('/api/dumping-reports', json={
        'description': 'Old CRT monitors dumped next to the river',
        'location': 'Alexandra',
        'waste_type': 'Monitors'
    })
    assert resp.status_code == 201
    report = resp.get_json()['report']
    assert report['severity'] == 'medium'
    assert report['status'] == 'pending'

    advanced = reviewer.post(f"/api/admin/dumping-reports/{report['id']}/advance").get_json()['report']
    assert advanced['status'] == 'in_progress'
    assert reporter.get('/api/dumping-reports').get_json()['reports'][0]['status'] == 'in_progress'


def test_listing_availability(client):
    owner = client_for('seller@example.com')
    stranger = client_for('buyer@example.com')
    listing_id = owner.post('/api/marketplace', json={
        'title': 'Canon printer', 'type': 'Printer', 'condition': 'Damaged', 'price': 150
    }).get_json()['listing']['id']

    assert stranger.post(f'/api/marketplace/{listing_id}/availability', json={'available': False}).status_code == 404
    assert owner.post(f'/api/marketplace/{listing_id}/availability', json={'available': 'no'}).status_code == 400

    hidden = owner.post(f'/api/marketplace/{listing_id}/availability', json={'available': False})
    assert hidden.get_json()['listing']['status'] == 'unavailable'
    assert app.test_client().get('/api/marketplace').get_json()['listings'] == []
    assert len(owner.get('/api/marketplace/mine').get_json()['listings']) == 1


def test_wallet_withdrawal_rules(client):
    client = client_for('mpho@example.com')
    user_id = client.get('/api/profile').get_json()['profile']['id']
    with app.app_context():
        db.session.add(WalletBalance(user_id=user_id, balance=100.0))
        db.session.commit()
        db.session.remove()

    assert client.post('/api/wallet/withdraw', json={'amount': 30, 'method': 'bank'}).status_code == 400
    assert client.post('/api/wallet/withdraw', json={'amount': 80, 'method': 'paypal'}).status_code == 400
    assert client.post('/api/wallet/withdraw', json={'amount': 120, 'method': 'bank'}).status_code == 400

    resp = client.post('/api/wallet/withdraw', json={'amount': 60, 'method': 'ewallet'})
    assert resp.status_code == 201
    assert resp.get_json()['transaction']['type'] == 'withdrawal'

    wallet = client.get('/api/wallet').get_json()
    assert wallet['balance']['balance'] == 40.0
    assert [t['status'] for t in wallet['transactions']] == ['pending']


def test_wallet_deposit_limits_and_unconfigured_payments(client):
    client = client_for('mpho@example.com')

    assert client.post('/api/wallet/deposit', json={'amount': 5}).status_code == 400
    assert client.post('/api/wallet/deposit', json={'amount': 6000}).status_code == 400
    resp = client.post('/api/wallet/deposit', json={'amount': 100})
    assert resp.status_code == 503
    assert resp.get_json()['success'] is False


def test_assistant_conversation_is_stored(client):
    client = client_for('lerato@example.com')

    first = client.post('/api/assistant/chat', json={'message': 'How do I get rid of a battery?'}).get_json()
    assert first['source'] == 'fallback'
    assert 'batteries' in first['response'].lower()

    second = client.post('/api/assistant/chat', json={
        'message': 'And an old TV?', 'conversation_id': first['conversationId']
    }).get_json()
    assert second['conversationId'] == first['conversationId']

    conversations = client.get('/api/assistant/conversations').get_json()['conversations']
    assert len(conversations) == 1
    messages = client.get(f"/api/assistant/conversations/{first['conversationId']}/messages").get_json()['messages']
    assert [m['role'] for m in messages] == ['user', 'assistant', 'user', 'assistant']


def test_assistant_answers_anonymous_visitors(client):
    resp = client.post('/api/assistant/chat', json={'message': 'Where can I recycle?'})
    assert resp.status_code == 200
    assert resp.get_json()['conversationId'] is None


@pytest.mark.parametrize("path", ['/api/admin/analytics', '/api/admin/collection-requests', '/api/admin/users'])
def test_admin_routes_need_login(client, path):
    assert client.get(path).status_code == 401


def test_listings_created_by_seed_data_are_public(client):
    owner_id = add_user('seed@example.com')
    with app.app_context():
        db.session.add(MarketplaceListing(user_id=owner_id, title='Router', type='Other', condition='Working'))
        db.session.commit()
        db.session.remove()

    listings = client.get('/api/marketplace').get_json()['listings']
    assert listings[0]['title'] == 'Router'
    assert listings[0]['is_available'] is True


def test_recycling_facilities_search_filter_and_sort(client):
    everything = client.get('/api/recycling-facilities').get_json()
    facilities = everything['facilities']
    assert len(facilities) == 5
    assert facilities[0]['name'] == 'Green E-Cycle Center'
    assert facilities[0]['distance'] < 5
    assert [f['distance'] for f in facilities] == sorted(f['distance'] for f in facilities)
    assert 'Batteries' in everything['item_types']

    furthest_first = client.get('/api/recycling-facilities?sort=desc').get_json()['facilities']
    assert furthest_first[-1]['name'] == 'Green E-Cycle Center'

    by_address = client.get('/api/recycling-facilities?q=cape%20town').get_json()['facilities']
    assert [f['name'] for f in by_address] == ['Green E-Cycle Center']
    by_name = client.get('/api/recycling-facilities?q=DEPOT').get_json()['facilities']
    assert [f['name'] for f in by_name] == ['Tech Reclaim Depot']

    batteries = client.get('/api/recycling-facilities?item=batteries').get_json()['facilities']
    assert sorted(f['id'] for f in batteries) == [1, 3, 4]
    assert len(client.get('/api/recycling-facilities?item=All').get_json()['facilities']) == 5

    near_durban = client.get('/api/recycling-facilities?lat=-29.86&lng=31.02').get_json()['facilities']
    assert near_durban[0]['name'] == 'Electro Waste Solutions'


@pytest.mark.parametrize("query", ['sort=sideways', 'lat=120&lng=18'])
def test_recycling_facilities_rejects_bad_parameters(client, query):
    assert client.get(f'/api/recycling-facilities?{query}').status_code == 400


def test_recycling_map_stays_available_offline(client):
    client = client_for('sipho@example.com')
    client.post('/api/offline/start')
    assert client.get('/api/offline/features').get_json()['features']['canViewRecyclingMap'] is True
    assert client.get('/api/recycling-facilities').status_code == 200
