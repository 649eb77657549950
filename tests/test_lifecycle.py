import pytest

import lifecycle
from lifecycle import (COLLECTION_REQUEST, DUMPING_REPORT, MARKETPLACE_LISTING, InvalidTransition, TransitionDenied,
                       check_initial, check_transition)
from app import db
from models import CollectionRequest
from conftest import create_user, store_for


def new_request(store, **overrides):
    record = {'address': '12 Long Street', 'city': 'Cape Town', 'postal_code': '8001'}
    record.update(overrides)
    return store.insert('collection_requests', record)


def new_listing(store):
    return store.insert('marketplace_listings', {
        'title': 'Old router', 'type': 'Other', 'condition': 'Working', 'price': 0.0, 'is_free': True
    })


def test_paths_and_terminal_states():
    assert COLLECTION_REQUEST.initial == 'pending'
    assert COLLECTION_REQUEST.terminal == {'completed', 'cancelled'}
    assert DUMPING_REPORT.terminal == {'resolved'}
    assert MARKETPLACE_LISTING.terminal == frozenset()
    assert COLLECTION_REQUEST.next_state('confirmed') == 'in_progress'
    assert COLLECTION_REQUEST.next_state('completed') is None
    assert MARKETPLACE_LISTING.next_state('unavailable') == 'available'


def test_records_start_in_the_first_state():
    assert check_initial(COLLECTION_REQUEST, None) == 'pending'
    with pytest.raises(InvalidTransition):
        check_initial(COLLECTION_REQUEST, 'completed')
    assert check_initial(MARKETPLACE_LISTING, 'unavailable') == 'unavailable'


@pytest.mark.parametrize("current, target", [
    ('pending', 'in_progress'),
    ('pending', 'completed'),
    ('confirmed', 'pending'),
    ('completed', 'in_progress'),
    ('cancelled', 'pending'),
    ('confirmed', 'cancelled'),
    ('pending', 'shipped'),
])
def test_skips_backward_moves_and_terminal_exits_are_rejected(current, target):
    with pytest.raises(InvalidTransition):
        check_transition(COLLECTION_REQUEST, current, target, role='super_admin')


def test_forward_steps_need_a_reviewer():
    assert check_transition(DUMPING_REPORT, 'pending', 'in_progress', role='moderator')
    assert check_transition(DUMPING_REPORT, 'pending', 'in_progress', system=True)
    with pytest.raises(TransitionDenied):
        check_transition(DUMPING_REPORT, 'pending', 'in_progress', is_owner=True)
    with pytest.raises(TransitionDenied):
        check_transition(DUMPING_REPORT, 'pending', 'in_progress', role='janitor')


def test_unchanged_status_is_not_a_transition():
    assert check_transition(COLLECTION_REQUEST, 'cancelled', 'cancelled') is False
    assert check_transition(DUMPING_REPORT, 'resolved', 'resolved') is False


def test_owner_cancels_pending_request_and_second_cancel_is_a_noop(ctx):
    owner = create_user("zanele@example.com")
    store = store_for(owner)
    request = new_request(store)
    assert request.status == 'pending'

    cancelled = lifecycle.cancel(store, 'collection_requests', request.id)
    assert cancelled.status == 'cancelled'
    updated_at = cancelled.updated_at

    again = lifecycle.cancel(store, 'collection_requests', request.id)
    assert again.status == 'cancelled'
    assert again.updated_at == updated_at


def test_cancel_after_confirmation_is_rejected(ctx):
    owner = create_user("zanele@example.com")
    reviewer = create_user("mod@example.com", admin_role='moderator')
    request = new_request(store_for(owner))

    lifecycle.advance(store_for(reviewer).as_admin('moderator'), 'collection_requests', request.id)

    with pytest.raises(InvalidTransition):
        lifecycle.cancel(store_for(owner), 'collection_requests', request.id)
    assert db.session.get(CollectionRequest, request.id).status == 'confirmed'


def test_owner_cannot_advance_own_request(ctx):
    owner = create_user("zanele@example.com")
    store = store_for(owner)
    request = new_request(store)

    with pytest.raises(TransitionDenied):
        lifecycle.advance(store, 'collection_requests', request.id)
    with pytest.raises(TransitionDenied):
        store.update('collection_requests', request.id, {'status': 'confirmed'})


def test_moderator_walks_request_to_completion(ctx):
    owner = create_user("zanele@example.com")
    reviewer = create_user("mod@example.com", admin_role='moderator')
    request = new_request(store_for(owner))
    admin_store = store_for(reviewer).as_admin('moderator')

    statuses = [lifecycle.advance(admin_store, 'collection_requests', request.id).status for _ in range(3)]

    assert statuses == ['confirmed', 'in_progress', 'completed']
    with pytest.raises(InvalidTransition):
        lifecycle.advance(admin_store, 'collection_requests', request.id)


def test_moderator_may_cancel_someone_elses_pending_request(ctx):
    owner = create_user("zanele@example.com")
    reviewer = create_user("mod@example.com", admin_role='moderator')
    request = new_request(store_for(owner))

    # Invisible to another ordinary user
    assert lifecycle.cancel(store_for(reviewer), 'collection_requests', request.id) is None
    cancelled = lifecycle.cancel(store_for(reviewer).as_admin('moderator'), 'collection_requests', request.id)
    assert cancelled.status == 'cancelled'


def test_skipping_through_a_raw_update_is_rejected(ctx):
    owner = create_user("zanele@example.com")
    request = new_request(store_for(owner))

    with pytest.raises(InvalidTransition):
        store_for(owner).elevated().update('collection_requests', request.id, {'status': 'completed'})
    assert db.session.get(CollectionRequest, request.id).status == 'pending'


def test_reports_cannot_be_cancelled(ctx):
    owner = create_user("zanele@example.com")
    store = store_for(owner)
    report = store.insert('dumping_reports', {
        'description': 'Monitors dumped behind the mall', 'location': 'Soweto', 'waste_type': 'Monitors'
    })

    with pytest.raises(InvalidTransition):
        lifecycle.cancel(store, 'dumping_reports', report.id)


def test_listing_availability_toggles_for_its_owner_only(ctx):
    owner = create_user("zanele@example.com")
    stranger = create_user("thabo@example.com")
    listing = new_listing(store_for(owner))

    assert lifecycle.set_availability(store_for(owner), listing.id, False).status == 'unavailable'
    assert lifecycle.set_availability(store_for(owner), listing.id, True).status == 'available'
    # Listings are readable by everyone but writable only by their owner
    assert lifecycle.set_availability(store_for(stranger), listing.id, False) is None
