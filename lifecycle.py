from dataclasses import dataclass

from rbac import authorize


class InvalidTransition(Exception):
    """The requested status change is not on the record type's path."""


class TransitionDenied(Exception):
    """The status change exists but this actor may not make it."""


@dataclass(frozen=True)
class StatusMachine:
    collection: str
    path: tuple
    cancel_state: str = None
    cancel_from: frozenset = frozenset()
    toggle: bool = False
    advance_role: str = 'moderator'

    @property
    def initial(self):
        return self.path[0]

    @property
    def states(self):
        if self.cancel_state:
            return self.path + (self.cancel_state,)
        return self.path

    @property
    def terminal(self):
        if self.toggle:
            return frozenset()
        return frozenset(s for s in (self.path[-1], self.cancel_state) if s)

    def next_state(self, current):
        if self.toggle:
            return self.path[1] if current == self.path[0] else self.path[0]
        if current not in self.path or current == self.path[-1]:
            return None
        return self.path[self.path.index(current) + 1]


COLLECTION_REQUEST = StatusMachine(
    collection='collection_requests',
    path=('pending', 'confirmed', 'in_progress', 'completed'),
    cancel_state='cancelled',
    cancel_from=frozenset({'pending'}),
)

DUMPING_REPORT = StatusMachine(
    collection='dumping_reports',
    path=('pending', 'in_progress', 'resolved'),
)

MARKETPLACE_LISTING = StatusMachine(
    collection='marketplace_listings',
    path=('available', 'unavailable'),
    toggle=True,
)

MACHINES = {m.collection: m for m in (COLLECTION_REQUEST, DUMPING_REPORT, MARKETPLACE_LISTING)}


def check_initial(machine, status):
    """Records are always created in the first state of their path."""
    if status is None:
        return machine.initial
    if machine.toggle and status in machine.path:
        return status
    if status != machine.initial:
        raise InvalidTransition(f"New {machine.collection} records must start as {machine.initial!r}")
    return status


def check_transition(machine, current, target, is_owner=False, role=None, system=False):
    """
    Decide whether ``current -> target`` may be written.

    Returns False for a write that leaves the status unchanged and True for
    an allowed change. Raises InvalidTransition for skips, backward moves,
    unknown states and moves out of a terminal state, and TransitionDenied
    when the actor is not the owner (cancel, toggle) or lacks the reviewer
    role (forward steps). ``system`` is server-side code acting on its own.
    """
    if target not in machine.states:
        raise InvalidTransition(f"Unknown status {target!r} for {machine.collection}")
    if current == target:
        return False

    privileged = system or authorize(role, machine.advance_role)

    if machine.toggle:
        if not (is_owner or privileged):
            raise TransitionDenied('Only the owner can change availability')
        return True

    if current in machine.terminal:
        raise InvalidTransition(f"{machine.collection} status {current!r} is final")

    if target == machine.cancel_state:
        if current not in machine.cancel_from:
            raise InvalidTransition(f"Cannot cancel once status is {current!r}")
        if not (is_owner or privileged):
            raise TransitionDenied('Only the owner can cancel this request')
        return True

    if target != machine.next_state(current):
        raise InvalidTransition(f"Cannot move {machine.collection} from {current!r} to {target!r}")
    if not privileged:
        raise TransitionDenied(f"Moving to {target!r} requires the {machine.advance_role} role")
    return True


def cancel(store, collection, record_id):
    machine = MACHINES[collection]
    if machine.cancel_state is None:
        raise InvalidTransition(f"{collection} records cannot be cancelled")
    return store.update(collection, record_id, {'status': machine.cancel_state})


def advance(store, collection, record_id):
    """Move a record one step along its path; returns None when it is not visible."""
    machine = MACHINES[collection]
    record = store.get(collection, record_id)
    if record is None:
        return None
    target = machine.next_state(record.status)
    if target is None or machine.toggle:
        raise InvalidTransition(f"{collection} status {record.status!r} has no next step")
    return store.update(collection, record_id, {'status': target})


def set_availability(store, listing_id, available):
    status = MARKETPLACE_LISTING.path[0] if available else MARKETPLACE_LISTING.path[1]
    return store.update(MARKETPLACE_LISTING.collection, listing_id, {'status': status})
