import uuid

import pytest

from journal_vet.workspace.authz import (
    AccessEvaluator,
    AccessPolicy,
    Actor,
    EntityKind,
    Operation,
    Target,
    WorkspaceFacts,
    evaluate,
)
from journal_vet.workspace.errors import NotFound, PermissionDenied
from journal_vet.workspace.models import TemplateKind

OWNER = uuid.uuid4()
MEMBER = uuid.uuid4()
OUTSIDER = uuid.uuid4()
WORKSPACE = uuid.uuid4()


def _facts(actor_id):
    return WorkspaceFacts(
        workspace_id=WORKSPACE,
        owner_id=OWNER,
        is_member=actor_id in (OWNER, MEMBER),
    )


def _allowed(actor_id, kind, op, target=None, policy=AccessPolicy()):
    return evaluate(Actor(id=actor_id), _facts(actor_id), kind, op, target, policy)


@pytest.mark.parametrize(
    "actor_id, op, expected",
    [
        (OWNER, Operation.READ, True),
        (MEMBER, Operation.READ, True),
        (OUTSIDER, Operation.READ, False),
        (OWNER, Operation.UPDATE, True),
        (MEMBER, Operation.UPDATE, False),
        (OWNER, Operation.CREATE, False),
        (OWNER, Operation.DELETE, False),
    ],
)
def test_workspace_rules(actor_id, op, expected):
    assert _allowed(actor_id, EntityKind.WORKSPACE, op) is expected


def test_membership_read_is_self_or_core():
    assert _allowed(MEMBER, EntityKind.MEMBERSHIP, Operation.READ, Target(account_id=MEMBER))
    assert not _allowed(MEMBER, EntityKind.MEMBERSHIP, Operation.READ, Target(account_id=OWNER))
    assert _allowed(OWNER, EntityKind.MEMBERSHIP, Operation.READ, Target(account_id=MEMBER))
    assert not _allowed(OUTSIDER, EntityKind.MEMBERSHIP, Operation.READ, Target(account_id=OUTSIDER))


def test_membership_delete_only_by_core():
    target = Target(account_id=MEMBER)
    assert _allowed(OWNER, EntityKind.MEMBERSHIP, Operation.DELETE, target)
    assert not _allowed(MEMBER, EntityKind.MEMBERSHIP, Operation.DELETE, target)


def test_owner_membership_row_is_never_deletable():
    target = Target(account_id=OWNER)
    # The owner's row is both "self" and "core" for the owner.
    assert not _allowed(OWNER, EntityKind.MEMBERSHIP, Operation.DELETE, target)
    assert not evaluate(
        Actor.system(), _facts(None), EntityKind.MEMBERSHIP, Operation.DELETE, target
    )


def test_system_actor_is_allowed_other_cells():
    system = Actor.system()
    facts = _facts(None)
    assert evaluate(system, facts, EntityKind.WORKSPACE, Operation.DELETE)
    assert evaluate(system, facts, EntityKind.INVITE, Operation.CREATE)
    assert evaluate(
        system, facts, EntityKind.MEMBERSHIP, Operation.DELETE, Target(account_id=MEMBER)
    )


def test_standard_templates_are_read_only():
    std = Target(template_kind=TemplateKind.STD)
    assert evaluate(Actor(id=OUTSIDER), None, EntityKind.TEMPLATE, Operation.READ, std)
    for op in (Operation.CREATE, Operation.UPDATE, Operation.DELETE):
        assert not _allowed(OWNER, EntityKind.TEMPLATE, op, std)


def test_custom_template_update_requires_core_or_creator():
    mine = Target(created_by=MEMBER, template_kind=TemplateKind.CUSTOM)
    theirs = Target(created_by=OWNER, template_kind=TemplateKind.CUSTOM)

    assert _allowed(MEMBER, EntityKind.TEMPLATE, Operation.UPDATE, mine)
    assert not _allowed(MEMBER, EntityKind.TEMPLATE, Operation.UPDATE, theirs)
    assert _allowed(OWNER, EntityKind.TEMPLATE, Operation.UPDATE, mine)
    assert not _allowed(MEMBER, EntityKind.TEMPLATE, Operation.DELETE, mine)
    assert _allowed(MEMBER, EntityKind.TEMPLATE, Operation.CREATE, mine)


def test_vocabulary_member_write_policy():
    assert not _allowed(MEMBER, EntityKind.VOCABULARY, Operation.UPDATE)
    assert _allowed(
        MEMBER,
        EntityKind.VOCABULARY,
        Operation.UPDATE,
        policy=AccessPolicy(vocabulary_member_write=True),
    )
    assert not _allowed(
        OUTSIDER,
        EntityKind.VOCABULARY,
        Operation.UPDATE,
        policy=AccessPolicy(vocabulary_member_write=True),
    )
    assert _allowed(MEMBER, EntityKind.VOCABULARY, Operation.CREATE)
    assert not _allowed(MEMBER, EntityKind.VOCABULARY, Operation.DELETE)


def test_journal_rules():
    assert _allowed(MEMBER, EntityKind.JOURNAL, Operation.CREATE, Target(created_by=MEMBER))
    assert not _allowed(MEMBER, EntityKind.JOURNAL, Operation.CREATE, Target(created_by=OWNER))
    assert not _allowed(OUTSIDER, EntityKind.JOURNAL, Operation.CREATE, Target(created_by=OUTSIDER))

    assert _allowed(MEMBER, EntityKind.JOURNAL, Operation.UPDATE, Target(created_by=MEMBER))
    assert not _allowed(MEMBER, EntityKind.JOURNAL, Operation.UPDATE, Target(created_by=OWNER))
    assert _allowed(OWNER, EntityKind.JOURNAL, Operation.UPDATE, Target(created_by=MEMBER))

    assert not _allowed(MEMBER, EntityKind.JOURNAL, Operation.DELETE, Target(created_by=MEMBER))
    assert _allowed(OWNER, EntityKind.JOURNAL, Operation.DELETE, Target(created_by=MEMBER))


def test_invites_are_core_only():
    for op in Operation:
        assert _allowed(OWNER, EntityKind.INVITE, op)
        assert not _allowed(MEMBER, EntityKind.INVITE, op)


def test_anonymous_actor_is_denied():
    assert not evaluate(Actor(id=None), _facts(None), EntityKind.WORKSPACE, Operation.READ)


def test_require_hides_foreign_workspaces(session, make_account):
    alice = make_account("alice@example.com")
    bob = make_account("bob@example.com")
    evaluator = AccessEvaluator(session)

    with pytest.raises(NotFound):
        evaluator.require(bob, alice.id, EntityKind.JOURNAL, Operation.READ)
    with pytest.raises(NotFound):
        evaluator.require(bob, alice.id, EntityKind.TEMPLATE, Operation.CREATE)


def test_require_reports_visible_but_forbidden(session, make_account):
    alice = make_account("alice@example.com")
    evaluator = AccessEvaluator(session)

    evaluator.require(alice, alice.id, EntityKind.WORKSPACE, Operation.UPDATE)
    with pytest.raises(PermissionDenied):
        evaluator.require(alice, alice.id, EntityKind.WORKSPACE, Operation.DELETE)


def test_facts_are_loaded_fresh(session, make_account):
    alice = make_account("alice@example.com")
    evaluator = AccessEvaluator(session)

    assert evaluator.facts(alice, alice.id).is_member is True
    assert evaluator.facts(alice, uuid.uuid4()) is None
    assert evaluator.facts(alice, None) is None
