from custody import get_db
from custody.decorators.audit import audit_log
from custody.models.audit import AuditLog


def _rows(action):
    return get_db().query(AuditLog).filter_by(action=action).all()


def test_failing_meta_builder_still_returns_the_view_result(app_context):
    def broken_meta(data, rv, args, kwargs):
        raise KeyError('serial_number')

    @audit_log('TEST.META.FAIL', entity='Asset', entity_id_key='id', meta_builder=broken_meta)
    def view():
        return {'id': 41, 'status': 'BAD'}

    assert view() == {'id': 41, 'status': 'BAD'}
    (row,) = _rows('TEST.META.FAIL')
    assert row.entity_id == '41'
    assert row.meta == {}


def test_failing_pre_fetch_skips_the_diff_only(app_context):
    def broken_snapshot(args, kwargs):
        raise RuntimeError('snapshot unavailable')

    @audit_log('TEST.PREFETCH.FAIL', entity='ServiceTicket', entity_id_arg='ticket_id',
               diff_keys=['title'], pre_fetch=broken_snapshot, meta_keys=['title'])
    def view(ticket_id):
        return {'title': 'after'}, 200

    assert view(ticket_id=7) == ({'title': 'after'}, 200)
    (row,) = _rows('TEST.PREFETCH.FAIL')
    assert row.entity_id == '7'
    assert row.meta == {'title': 'after'}


def test_error_responses_are_not_audited(app_context):
    @audit_log('TEST.NOT.AUDITED', entity='Asset', entity_id_key='id')
    def view():
        return {'error': 'nope'}, 409

    view()
    assert _rows('TEST.NOT.AUDITED') == []
