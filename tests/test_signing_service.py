"""Tests for the signing workflow service layer (no HTTP)."""
import threading

import pytest
from sqlalchemy.exc import OperationalError

from app.esign.audit import list_events, record_event
from app.esign.db import build_engine, build_sessionmaker
from app.esign.errors import (
    AlreadySignedError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    OutOfOrderError,
    PersistenceFault,
    ValidationError,
)
from app.esign.models import AuditLog, Base, User
from app.esign.modules.signing import lifecycle, service
from app.esign.modules.signing.ledger import append_signature
from app.esign.modules.signing.models import Document, DocumentStatus, Signature, SignerSlot, SlotStatus
from app.esign.modules.signing.roster import count_total_and_signed, find_slot, list_roster, mark_signed
from app.esign.modules.signing.service import (
    SigningPolicy,
    create_document,
    get_document_detail,
    list_documents_for_user,
    policy_from_config,
    publish_document,
    submit_signature,
)

PNG = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="


@pytest.fixture()
def sm(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path/'test.db'}")
    Base.metadata.create_all(bind=engine)
    maker = build_sessionmaker(engine)
    with maker() as s:
        s.add_all(
            [
                User(username=name, email=f"{name}@x.com", password_hash="x", is_active=True)
                for name in ("creator", "a", "b", "c", "outsider")
            ]
        )
        s.commit()
    yield maker
    engine.dispose()


@pytest.fixture()
def s(sm):
    with sm() as session:
        yield session


def _uid(s, name: str) -> int:
    return s.query(User).filter(User.username == name).one().id


def _sign(s, doc_id: int, user_id: int, **kwargs) -> bool:
    kwargs.setdefault("payload", PNG)
    kwargs.setdefault("client_ip", "10.0.0.1")
    kwargs.setdefault("user_agent", "pytest")
    return submit_signature(s, document_id=doc_id, user_id=user_id, **kwargs)


def _counts(sm, doc_id: int) -> tuple[int, int, int, int]:
    """(ledger rows, audit rows, roster total, roster signed) read from a fresh session."""
    with sm() as fresh:
        ledger = fresh.query(Signature).filter(Signature.document_id == doc_id).count()
        audit = fresh.query(AuditLog).filter(AuditLog.document_id == doc_id).count()
        total, signed = count_total_and_signed(fresh, doc_id)
    return ledger, audit, total, signed


def test_create_document_builds_roster_and_audit(s):
    creator = _uid(s, "creator")
    doc_id = create_document(
        s, creator_id=creator, title="  NDA  ", description="Mutual", signer_emails=["a@x.com", "b@x.com"]
    )

    doc = s.get(Document, doc_id)
    assert doc.title == "NDA"
    assert doc.status == DocumentStatus.PENDING
    assert doc.creator_id == creator

    slots = list_roster(s, doc_id)
    assert [(slot.user_id, slot.order_number, slot.status) for slot in slots] == [
        (_uid(s, "a"), 1, SlotStatus.PENDING),
        (_uid(s, "b"), 2, SlotStatus.PENDING),
    ]

    events = list_events(s, doc_id)
    assert [(e.action, e.user_id) for e in events] == [("created", creator)]


def test_unresolvable_emails_keep_their_list_position_by_default(s):
    doc_id = create_document(
        s,
        creator_id=_uid(s, "creator"),
        title="Lease",
        signer_emails=["a@x.com", "ghost@x.com", " B@X.com ", ""],
    )
    slots = list_roster(s, doc_id)
    assert [(slot.user_id, slot.order_number) for slot in slots] == [(_uid(s, "a"), 1), (_uid(s, "b"), 3)]


def test_dense_policy_renumbers_resolved_signers(s):
    doc_id = create_document(
        s,
        creator_id=_uid(s, "creator"),
        title="Lease",
        signer_emails=["a@x.com", "ghost@x.com", "b@x.com"],
        policy=SigningPolicy(dense_order=True),
    )
    slots = list_roster(s, doc_id)
    assert [(slot.user_id, slot.order_number) for slot in slots] == [(_uid(s, "a"), 1), (_uid(s, "b"), 2)]


def test_duplicate_signer_email_keeps_first_slot(s):
    doc_id = create_document(
        s, creator_id=_uid(s, "creator"), title="Lease", signer_emails=["a@x.com", "b@x.com", "a@x.com"]
    )
    assert count_total_and_signed(s, doc_id) == (2, 0)


@pytest.mark.parametrize("title", ["", "   ", None])
def test_create_requires_title(sm, s, title):
    with pytest.raises(ValidationError):
        create_document(s, creator_id=_uid(s, "creator"), title=title, signer_emails=["a@x.com"])
    with sm() as fresh:
        assert fresh.query(Document).count() == 0
        assert fresh.query(AuditLog).count() == 0


def test_nda_example_with_one_resolvable_signer(sm, s):
    a, b = _uid(s, "a"), _uid(s, "b")
    doc_id = create_document(
        s, creator_id=_uid(s, "creator"), title="NDA", signer_emails=["a@x.com", "nobody@x.com"]
    )
    slots = list_roster(s, doc_id)
    assert [(slot.user_id, slot.order_number) for slot in slots] == [(a, 1)]

    with pytest.raises(NotAuthorizedError):
        _sign(s, doc_id, b)
    assert _counts(sm, doc_id) == (0, 1, 1, 0)

    assert _sign(s, doc_id, a) is True
    assert s.get(Document, doc_id).status == DocumentStatus.SIGNED
    assert _counts(sm, doc_id) == (1, 2, 1, 1)


def test_two_signers_complete_in_either_order(sm, s):
    a, b = _uid(s, "a"), _uid(s, "b")
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Contract", signer_emails=["a@x.com", "b@x.com"])

    assert _sign(s, doc_id, b) is False
    assert s.get(Document, doc_id).status == DocumentStatus.PENDING
    assert count_total_and_signed(s, doc_id) == (2, 1)

    assert _sign(s, doc_id, a) is True
    assert s.get(Document, doc_id).status == DocumentStatus.SIGNED
    assert count_total_and_signed(s, doc_id) == (2, 2)

    detail = get_document_detail(s, doc_id, _uid(s, "creator"))
    assert [sig.user_id for sig in detail.signatures] == [b, a]
    assert [e.action for e in detail.audit_logs] == ["signed", "signed", "created"]
    assert (detail.signed_count, detail.total_signers) == (2, 2)


def test_document_without_signers_never_completes(sm, s):
    creator = _uid(s, "creator")
    doc_id = create_document(s, creator_id=creator, title="Orphan", signer_emails=["ghost@x.com"])

    assert count_total_and_signed(s, doc_id) == (0, 0)
    for name in ("creator", "a", "outsider"):
        with pytest.raises(NotAuthorizedError):
            _sign(s, doc_id, _uid(s, name))
    assert s.get(Document, doc_id).status == DocumentStatus.PENDING
    assert _counts(sm, doc_id) == (0, 1, 0, 0)


def test_second_signature_is_rejected_without_side_effects(sm, s):
    a = _uid(s, "a")
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Contract", signer_emails=["a@x.com", "b@x.com"])
    _sign(s, doc_id, a)
    before = _counts(sm, doc_id)

    with pytest.raises(AlreadySignedError):
        _sign(s, doc_id, a)
    assert _counts(sm, doc_id) == before == (1, 2, 2, 1)


def test_stale_reader_cannot_sign_twice(sm):
    with sm() as setup:
        a = _uid(setup, "a")
        doc_id = create_document(setup, creator_id=_uid(setup, "creator"), title="Race", signer_emails=["a@x.com"])

    with sm() as first, sm() as second:
        stale = second.query(SignerSlot).filter(SignerSlot.document_id == doc_id).one()
        assert stale.status == SlotStatus.PENDING

        assert _sign(first, doc_id, a) is True
        with pytest.raises(AlreadySignedError):
            _sign(second, doc_id, a)

    with sm() as fresh:
        assert fresh.query(Signature).filter(Signature.document_id == doc_id).count() == 1
        signed_events = fresh.query(AuditLog).filter(AuditLog.document_id == doc_id, AuditLog.action == "signed")
        assert signed_events.count() == 1


def test_last_signer_with_stale_roster_still_completes(sm):
    with sm() as setup:
        a, b = _uid(setup, "a"), _uid(setup, "b")
        doc_id = create_document(setup, creator_id=_uid(setup, "creator"), title="Race", signer_emails=["a@x.com", "b@x.com"])

    with sm() as first, sm() as second:
        # second has already seen the document pending and both slots unsigned
        assert second.get(Document, doc_id).status == DocumentStatus.PENDING
        assert [slot.status for slot in list_roster(second, doc_id)] == [SlotStatus.PENDING, SlotStatus.PENDING]

        assert _sign(first, doc_id, a) is False
        assert _sign(second, doc_id, b) is True
        assert second.get(Document, doc_id).status == DocumentStatus.SIGNED

    with sm() as fresh:
        assert fresh.get(Document, doc_id).status == DocumentStatus.SIGNED
    assert _counts(sm, doc_id) == (2, 3, 2, 2)


def test_concurrent_signers_complete_the_document(sm):
    with sm() as setup:
        a, b = _uid(setup, "a"), _uid(setup, "b")
        doc_id = create_document(setup, creator_id=_uid(setup, "creator"), title="Race", signer_emails=["a@x.com", "b@x.com"])

    barrier = threading.Barrier(2)
    results: dict[int, object] = {}

    def worker(user_id: int) -> None:
        with sm() as session:
            barrier.wait()
            try:
                results[user_id] = _sign(session, doc_id, user_id)
            except Exception as e:
                results[user_id] = e

    threads = [threading.Thread(target=worker, args=(uid,)) for uid in (a, b)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results.values(), key=repr) == [False, True]
    with sm() as fresh:
        assert fresh.get(Document, doc_id).status == DocumentStatus.SIGNED
    assert _counts(sm, doc_id) == (2, 3, 2, 2)


def test_recompute_status_leaves_terminal_documents_alone(s):
    a = _uid(s, "a")
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Closed", signer_emails=["a@x.com"])
    doc = s.get(Document, doc_id)
    doc.status = DocumentStatus.REJECTED
    mark_signed(find_slot(s, doc_id, a))

    assert lifecycle.recompute_status(s, doc) is False
    assert doc.status == DocumentStatus.REJECTED
    s.rollback()


def test_ledger_uniqueness_maps_to_already_signed(sm):
    with sm() as setup:
        a = _uid(setup, "a")
        doc_id = create_document(setup, creator_id=_uid(setup, "creator"), title="Race", signer_emails=["a@x.com"])
        # A competing writer's ledger row committed before this signer's slot update.
        append_signature(setup, document_id=doc_id, user_id=a, payload=PNG, client_ip=None, user_agent=None)
        setup.commit()

    with sm() as s:
        with pytest.raises(AlreadySignedError):
            _sign(s, doc_id, a)

    assert _counts(sm, doc_id) == (1, 1, 1, 0)


def test_audit_failure_rolls_back_the_whole_signature(sm, s, monkeypatch):
    a = _uid(s, "a")
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Atomic", signer_emails=["a@x.com"])

    def _broken_record_event(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service, "record_event", _broken_record_event)
    with pytest.raises(PersistenceFault) as exc:
        _sign(s, doc_id, a)
    assert "disk I/O error" in (exc.value.detail or "")

    assert _counts(sm, doc_id) == (0, 1, 1, 0)
    with sm() as fresh:
        assert fresh.get(Document, doc_id).status == DocumentStatus.PENDING


def test_missing_payload_is_a_validation_error(sm, s):
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Contract", signer_emails=["a@x.com"])
    for payload in (None, "", "   "):
        with pytest.raises(ValidationError):
            _sign(s, doc_id, _uid(s, "a"), payload=payload)
    assert _counts(sm, doc_id) == (0, 1, 1, 0)


def test_oversized_payload_is_rejected(s):
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Contract", signer_emails=["a@x.com"])
    with pytest.raises(ValidationError):
        _sign(s, doc_id, _uid(s, "a"), payload="x" * 101, policy=SigningPolicy(max_signature_bytes=100))


def test_unknown_document_is_not_found(s):
    with pytest.raises(NotFoundError):
        _sign(s, 9999, _uid(s, "a"))
    with pytest.raises(NotFoundError):
        get_document_detail(s, 9999, _uid(s, "a"))


def test_sequential_policy_gates_on_lower_order_numbers(s):
    a, b = _uid(s, "a"), _uid(s, "b")
    policy = SigningPolicy(sequential=True)
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Ordered", signer_emails=["a@x.com", "b@x.com"])

    with pytest.raises(OutOfOrderError) as exc:
        _sign(s, doc_id, b, policy=policy)
    assert isinstance(exc.value, NotAuthorizedError)

    assert _sign(s, doc_id, a, policy=policy) is False
    assert _sign(s, doc_id, b, policy=policy) is True


def test_draft_documents_open_only_after_publish(sm, s):
    creator, a = _uid(s, "creator"), _uid(s, "a")
    doc_id = create_document(s, creator_id=creator, title="Draft", signer_emails=["a@x.com"], draft=True)
    assert s.get(Document, doc_id).status == DocumentStatus.DRAFT

    with pytest.raises(InvalidTransitionError):
        _sign(s, doc_id, a)
    assert [d.id for d in list_documents_for_user(s, a)] == []
    with pytest.raises(NotFoundError):
        get_document_detail(s, doc_id, a)

    with pytest.raises(NotAuthorizedError):
        publish_document(s, document_id=doc_id, user_id=a)

    doc = publish_document(s, document_id=doc_id, user_id=creator)
    assert doc.status == DocumentStatus.PENDING
    with pytest.raises(InvalidTransitionError):
        publish_document(s, document_id=doc_id, user_id=creator)

    assert _sign(s, doc_id, a) is True
    actions = [e.action for e in list_events(s, doc_id)]
    assert actions == ["signed", "published", "created"]


def test_list_documents_for_creator_and_signers(s):
    creator, a, b, outsider = (_uid(s, n) for n in ("creator", "a", "b", "outsider"))
    first = create_document(s, creator_id=creator, title="First", signer_emails=["a@x.com", "b@x.com"])
    second = create_document(s, creator_id=creator, title="Second", signer_emails=["b@x.com"])
    _sign(s, first, a)

    mine = list_documents_for_user(s, creator)
    assert [d.id for d in mine] == [second, first]
    assert [(d.total_signers, d.signed_count) for d in mine] == [(1, 0), (2, 1)]
    assert mine[0].creator_name == "creator"

    assert [d.id for d in list_documents_for_user(s, a)] == [first]
    assert [d.id for d in list_documents_for_user(s, b)] == [second, first]
    assert list_documents_for_user(s, outsider) == []


def test_detail_is_hidden_from_non_participants(s):
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Private", signer_emails=["a@x.com"])
    with pytest.raises(NotFoundError):
        get_document_detail(s, doc_id, _uid(s, "outsider"))
    assert get_document_detail(s, doc_id, _uid(s, "a")).document.id == doc_id


def test_audit_listing_is_newest_first_and_bounded(s):
    doc_id = create_document(
        s, creator_id=_uid(s, "creator"), title="Busy", signer_emails=["a@x.com", "b@x.com", "c@x.com"]
    )
    for name in ("a", "b", "c"):
        _sign(s, doc_id, _uid(s, name))

    everything = list_events(s, doc_id)
    assert [e.action for e in everything] == ["signed", "signed", "signed", "created"]
    assert [e.id for e in everything] == sorted((e.id for e in everything), reverse=True)

    latest_two = list_events(s, doc_id, limit=2)
    assert [e.id for e in latest_two] == [everything[0].id, everything[1].id]

    detail = get_document_detail(s, doc_id, _uid(s, "creator"), audit_limit=1)
    assert [e.id for e in detail.audit_logs] == [everything[0].id]


def test_signed_audit_entry_carries_origin(s):
    a = _uid(s, "a")
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Origin", signer_emails=["a@x.com"])
    _sign(s, doc_id, a, client_ip="203.0.113.9", user_agent="Mozilla/5.0")

    latest = list_events(s, doc_id, limit=1)[0]
    assert (latest.action, latest.user_id, latest.ip_address) == ("signed", a, "203.0.113.9")
    sig = s.query(Signature).filter(Signature.document_id == doc_id).one()
    assert (sig.ip_address, sig.user_agent, sig.signature_data) == ("203.0.113.9", "Mozilla/5.0", PNG)


def test_record_event_rejects_unknown_actions(s):
    doc_id = create_document(s, creator_id=_uid(s, "creator"), title="Vocab")
    with pytest.raises(ValueError):
        record_event(s, document_id=doc_id, actor_id=None, action="deleted", details="nope")


def test_policy_from_config():
    policy = policy_from_config(
        {
            "ROSTER_ORDER_POLICY": "dense",
            "SIGNING_ORDER": "sequential",
            "MAX_SIGNATURE_BYTES": 1024,
            "AUDIT_LIST_LIMIT": 5,
        }
    )
    assert policy == SigningPolicy(dense_order=True, sequential=True, max_signature_bytes=1024, audit_limit=5)
    assert policy_from_config({}) == SigningPolicy()
