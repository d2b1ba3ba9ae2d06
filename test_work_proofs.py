"""Work proof review cycle, disputes and deadline processing"""
import io
import json
import os
from datetime import datetime, timedelta

import pytest

import app as app_module
from app import (
    db, Application, Escrow, WorkProof, Dispute, WalletTransaction, Microjob,
    get_or_create_wallet, set_site_setting, sweep_expired_work_proofs, format_countdown, display_status
)


def submit(client, application, **overrides):
    payload = {'description': 'Followed and commented', 'proof_links': ['https://social.example.com/p/1']}
    payload.update(overrides)
    return client.post(f'/api/applications/{application.id}/work-proofs', json=payload)


def make_proof(employer, worker, job, application, **kwargs):
    values = {'description': 'done', 'status': 'submitted', 'proof_links': json.dumps(['https://x.example.com'])}
    values.update(kwargs)
    proof = WorkProof(job_id=job.id, application_id=application.id, worker_id=worker.id,
                      employer_id=employer.id, **values)
    db.session.add(proof)
    db.session.commit()
    return proof


def test_submit_work_proof(client, hired, login):
    employer, worker, job, application, escrow = hired()
    login(client, worker)

    assert submit(client, application, proof_links=[]).status_code == 400
    assert submit(client, application, proof_links=['ftp://files.example.com']).status_code == 400
    assert submit(client, application, description='').status_code == 400

    response = submit(client, application)
    assert response.status_code == 201
    proof = response.get_json()['work_proof']
    assert proof['status'] == 'submitted'
    assert proof['proof_links'] == ['https://social.example.com/p/1']

    again = submit(client, application)
    assert again.status_code == 400
    assert 'already submitted' in again.get_json()['error']

    login(client, employer)
    assert submit(client, application).status_code == 403


def test_submit_with_screenshot_and_serve_it(client, hired, login, make_user):
    employer, worker, job, application, escrow = hired()
    login(client, worker)

    response = client.post(
        f'/api/applications/{application.id}/work-proofs',
        data={'description': 'Screenshot attached', 'screenshots': (io.BytesIO(b'\x89PNG fake'), 'shot.png')},
        content_type='multipart/form-data'
    )
    assert response.status_code == 201
    path = response.get_json()['work_proof']['screenshots'][0]
    assert path.startswith('/uploads/work_proofs/') and path.endswith('_shot.png')

    assert client.get(path).status_code == 200
    login(client, make_user('stranger'))
    assert client.get(path).status_code == 403


def test_submit_rejects_disallowed_file_type(client, hired, login):
    employer, worker, job, application, escrow = hired()
    login(client, worker)
    response = client.post(
        f'/api/applications/{application.id}/work-proofs',
        data={'description': 'See attached', 'screenshots': (io.BytesIO(b'MZ'), 'payload.exe')},
        content_type='multipart/form-data'
    )
    assert response.status_code == 400
    assert WorkProof.query.count() == 0


def stored_screenshots():
    return set(os.listdir(os.path.join(app_module.app.config['UPLOAD_FOLDER'], 'work_proofs')))


def png(name, size=16):
    return io.BytesIO(b'\x89PNG' + b'\0' * size), name


@pytest.mark.parametrize('screenshots, error', [
    ([png(f'shot{i}.png') for i in range(6)], 'At most 5 screenshots are allowed'),
    ([png('first.png'), (io.BytesIO(b'MZ'), 'second.exe')], 'File type not allowed: second.exe'),
    ([png('huge.png', size=5 * 1024 * 1024)], 'File too large: huge.png (max 5MB)'),
])
def test_rejected_upload_batch_leaves_no_files(client, hired, login, screenshots, error):
    employer, worker, job, application, escrow = hired()
    login(client, worker)
    before = stored_screenshots()

    response = client.post(
        f'/api/applications/{application.id}/work-proofs',
        data={'description': 'See attached', 'screenshots': screenshots},
        content_type='multipart/form-data'
    )
    assert response.status_code == 400
    assert response.get_json()['error'] == error
    assert stored_screenshots() == before


def test_failed_submission_removes_saved_screenshots(client, hired, login, monkeypatch):
    employer, worker, job, application, escrow = hired()
    login(client, worker)
    before = stored_screenshots()

    def broken_notify(*args, **kwargs):
        raise RuntimeError('notification store unavailable')
    monkeypatch.setattr(app_module, 'notify', broken_notify)

    response = client.post(
        f'/api/applications/{application.id}/work-proofs',
        data={'description': 'See attached', 'screenshots': [png('a.png'), png('b.png')]},
        content_type='multipart/form-data'
    )
    assert response.status_code == 500
    assert WorkProof.query.count() == 0
    assert stored_screenshots() == before


def test_approve_releases_escrow_less_fee(client, hired, login):
    employer, worker, job, application, escrow = hired()
    login(client, worker)
    proof_id = submit(client, application).get_json()['work_proof']['id']

    login(client, worker)
    assert client.post(f'/api/work-proofs/{proof_id}/approve').status_code == 403

    login(client, employer)
    response = client.post(f'/api/work-proofs/{proof_id}/approve')
    assert response.status_code == 200
    body = response.get_json()
    assert body['work_proof']['status'] == 'approved'
    assert body['escrow']['status'] == 'released'
    assert body['escrow']['platform_fee'] == 0.5
    assert body['escrow']['net_amount'] == 9.5

    assert get_or_create_wallet(worker.id).earnings_balance == 9.5
    employer_wallet = get_or_create_wallet(employer.id)
    assert employer_wallet.held_balance == 0
    assert employer_wallet.total_spent == 10.0
    assert db.session.get(Application, application.id).status == 'completed'

    fee = WalletTransaction.query.filter_by(type='fee').one()
    assert fee.amount == -0.5
    assert fee.reference_type == 'job_payment'

    # The job still needs a second worker
    assert db.session.get(Microjob, job.id).status == 'open'


def test_reject_then_accept_rejection_refunds_employer(client, hired, login):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application)

    login(client, employer)
    assert client.post(f'/api/work-proofs/{proof.id}/reject', json={}).status_code == 400
    rejected = client.post(f'/api/work-proofs/{proof.id}/reject', json={'reason': 'Comment missing'})
    assert rejected.status_code == 200
    data = rejected.get_json()['work_proof']
    assert data['status'] == 'rejected'
    deadline = datetime.fromisoformat(data['rejection_deadline'])
    assert timedelta(hours=23) < deadline - datetime.utcnow() <= timedelta(hours=24)

    login(client, worker)
    response = client.post(f'/api/work-proofs/{proof.id}/accept-rejection')
    assert response.status_code == 200
    assert response.get_json()['work_proof']['status'] == 'rejected_accepted'
    assert response.get_json()['work_proof']['auto_processed'] is False

    wallet = get_or_create_wallet(employer.id)
    assert wallet.deposit_balance == 100.0
    assert wallet.held_balance == 0
    assert db.session.get(Escrow, escrow.id).status == 'refunded'
    assert db.session.get(Application, application.id).status == 'cancelled'
    assert db.session.get(Microjob, job.id).applications_count == 0


def test_revision_cycle_and_limit(client, hired, login):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application)

    for round_number in (1, 2):
        login(client, employer)
        response = client.post(f'/api/work-proofs/{proof.id}/request-revision', json={'notes': 'Add a screenshot'})
        assert response.status_code == 200
        assert response.get_json()['work_proof']['revision_count'] == round_number

        login(client, worker)
        resubmitted = client.post(f'/api/work-proofs/{proof.id}/resubmit', json={
            'description': f'Revision {round_number}',
            'proof_links': ['https://social.example.com/p/2']
        })
        assert resubmitted.status_code == 200
        assert resubmitted.get_json()['work_proof']['status'] == 'submitted'
        assert resubmitted.get_json()['work_proof']['revision_deadline'] is None

    login(client, employer)
    limited = client.post(f'/api/work-proofs/{proof.id}/request-revision', json={'notes': 'Once more'})
    assert limited.status_code == 400
    assert limited.get_json()['error'] == 'Maximum revision requests reached'


def test_resubmit_after_deadline_is_refused(client, hired, login):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='revision_requested', revision_count=1,
                       revision_deadline=datetime.utcnow() - timedelta(minutes=1))
    login(client, worker)
    response = client.post(f'/api/work-proofs/{proof.id}/resubmit', json={'description': 'late'})
    assert response.status_code == 400


def test_worker_cancel_refunds_employer(client, hired, login):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='revision_requested', revision_count=1,
                       revision_deadline=datetime.utcnow() + timedelta(hours=3))

    login(client, worker)
    response = client.post(f'/api/work-proofs/{proof.id}/cancel')
    assert response.status_code == 200
    assert response.get_json()['work_proof']['status'] == 'cancelled_by_worker'
    assert get_or_create_wallet(employer.id).deposit_balance == 100.0

    # Slot reopened, so the worker count can be lowered again
    assert db.session.get(Microjob, job.id).applications_count == 0


def test_dispute_and_release_payment(client, hired, login, make_user):
    admin = make_user('boss', is_admin=True)
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='rejected', rejection_reason='Wrong post',
                       rejection_deadline=datetime.utcnow() + timedelta(hours=10))

    login(client, worker)
    assert client.post(f'/api/work-proofs/{proof.id}/dispute', json={}).status_code == 400
    filed = client.post(f'/api/work-proofs/{proof.id}/dispute', json={
        'reason': 'The comment is visible on the pinned post', 'requestedAction': 'payment'
    })
    assert filed.status_code == 201
    dispute_id = filed.get_json()['dispute']['id']
    assert filed.get_json()['dispute']['dispute_number'].startswith('DIS-')
    assert db.session.get(Escrow, escrow.id).status == 'disputed'

    duplicate = client.post(f'/api/work-proofs/{proof.id}/dispute', json={'reason': 'again'})
    assert duplicate.status_code == 409
    assert duplicate.get_json()['error'] == 'A dispute for this work proof already exists and is pending resolution'

    message = client.post(f'/api/disputes/{dispute_id}/messages', json={'message': 'Screenshot attached'})
    assert message.status_code == 201

    login(client, admin)
    assert client.post(f'/api/admin/disputes/{dispute_id}/review').get_json()['dispute']['status'] == 'under_review'
    assert client.post(f'/api/admin/disputes/{dispute_id}/resolve', json={
        'resolution_type': 'release_payment'
    }).status_code == 400

    resolved = client.post(f'/api/admin/disputes/{dispute_id}/resolve', json={
        'resolution_type': 'release_payment', 'resolution': 'Comment verified'
    })
    assert resolved.status_code == 200
    assert resolved.get_json()['dispute']['status'] == 'resolved'
    assert resolved.get_json()['work_proof']['status'] == 'approved'
    assert get_or_create_wallet(worker.id).earnings_balance == 9.5

    login(client, employer)
    detail = client.get(f'/api/disputes/{dispute_id}').get_json()
    assert [m['message'] for m in detail['messages']] == ['Screenshot attached']
    assert client.post(f'/api/disputes/{dispute_id}/messages', json={'message': 'late'}).status_code == 400


@pytest.mark.parametrize('resolution_type, proof_status, escrow_status', [
    ('refund_employer', 'rejected_accepted', 'refunded'),
    ('allow_resubmission', 'revision_requested', 'funded'),
])
def test_dispute_resolutions(client, hired, login, make_user, resolution_type, proof_status, escrow_status):
    admin = make_user('boss', is_admin=True)
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='rejected', rejection_reason='Wrong post',
                       rejection_deadline=datetime.utcnow() + timedelta(hours=10))

    login(client, worker)
    dispute_id = client.post(f'/api/work-proofs/{proof.id}/dispute', json={
        'reason': 'Please check again', 'requestedAction': 'resubmission'
    }).get_json()['dispute']['id']

    login(client, admin)
    response = client.post(f'/api/admin/disputes/{dispute_id}/resolve', json={
        'resolution_type': resolution_type, 'resolution': 'Decided'
    })
    assert response.status_code == 200
    assert response.get_json()['work_proof']['status'] == proof_status
    assert db.session.get(Escrow, escrow.id).status == escrow_status


def test_dispute_requires_live_rejection(client, hired, login):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='rejected',
                       rejection_deadline=datetime.utcnow() - timedelta(seconds=5))
    login(client, worker)
    response = client.post(f'/api/work-proofs/{proof.id}/dispute', json={'reason': 'too late'})
    assert response.status_code == 400
    assert Dispute.query.count() == 0


def test_sweep_refunds_expired_rejections(hired):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='rejected',
                       rejection_deadline=datetime.utcnow() - timedelta(minutes=1))

    summary = sweep_expired_work_proofs()

    assert summary == {'processed': 1, 'failed': 0, 'rejections_refunded': 1, 'revisions_cancelled': 0}
    proof = db.session.get(WorkProof, proof.id)
    assert proof.status == 'rejected_accepted'
    assert proof.auto_processed is True
    assert display_status(db.session.get(Application, application.id), proof) == 'auto_refunded'
    assert get_or_create_wallet(employer.id).deposit_balance == 100.0


def test_sweep_cancels_expired_revisions_with_penalty(hired):
    employer, worker, job, application, escrow = hired()
    get_or_create_wallet(worker.id).earnings_balance = 1.5
    db.session.commit()
    set_site_setting('revision_settings', json.dumps({
        'revision_penalty_enabled': True, 'revision_penalty_amount': 2
    }))
    proof = make_proof(employer, worker, job, application, status='revision_requested', revision_count=1,
                       revision_deadline=datetime.utcnow() - timedelta(minutes=1))

    summary = sweep_expired_work_proofs()

    assert summary['revisions_cancelled'] == 1
    proof = db.session.get(WorkProof, proof.id)
    assert display_status(db.session.get(Application, application.id), proof) == 'auto_cancelled'
    # Penalty is capped at what the worker has
    assert get_or_create_wallet(worker.id).earnings_balance == 0
    assert WalletTransaction.query.filter_by(type='penalty').one().amount == -1.5


def test_sweep_leaves_proofs_when_refunds_disabled(hired):
    employer, worker, job, application, escrow = hired()
    set_site_setting('revision_settings', json.dumps({'refund_on_rejection_timeout': False}))
    proof = make_proof(employer, worker, job, application, status='rejected',
                       rejection_deadline=datetime.utcnow() - timedelta(hours=1))

    assert sweep_expired_work_proofs()['processed'] == 0
    assert db.session.get(WorkProof, proof.id).status == 'rejected'


def test_sweep_failure_on_one_proof_does_not_stop_the_rest(hired, make_user, monkeypatch):
    employer, worker, job, application, escrow = hired()
    other = make_user('second_worker')
    other_application = Application(job_id=job.id, applicant_id=other.id, proposed_budget=10.0, status='pending')
    db.session.add(other_application)
    db.session.flush()
    other_escrow, error = app_module.fund_escrow(other_application, job, 10.0)
    assert error is None
    other_application.status = 'accepted'
    db.session.commit()

    expired = datetime.utcnow() - timedelta(minutes=1)
    broken = make_proof(employer, worker, job, application, status='rejected', rejection_deadline=expired)
    healthy = make_proof(employer, other, job, other_application, status='rejected', rejection_deadline=expired)
    broken_id = broken.id

    real_refund = app_module.refund_work_proof

    def refund(proof, *args, **kwargs):
        if proof.id == broken_id:
            raise RuntimeError('ledger write failed')
        return real_refund(proof, *args, **kwargs)
    monkeypatch.setattr(app_module, 'refund_work_proof', refund)

    summary = sweep_expired_work_proofs()

    assert summary == {'processed': 1, 'failed': 1, 'rejections_refunded': 1, 'revisions_cancelled': 0}
    assert db.session.get(WorkProof, broken_id).status == 'rejected'
    assert db.session.get(WorkProof, healthy.id).status == 'rejected_accepted'
    assert db.session.get(Escrow, other_escrow.id).status == 'refunded'
    assert db.session.get(Escrow, escrow.id).status != 'refunded'
    assert get_or_create_wallet(employer.id).deposit_balance == 90.0


def test_sweep_ignores_live_deadlines(hired):
    employer, worker, job, application, escrow = hired()
    make_proof(employer, worker, job, application, status='rejected',
               rejection_deadline=datetime.utcnow() + timedelta(hours=1))
    assert sweep_expired_work_proofs()['processed'] == 0


def test_admin_process_timeouts(client, hired, login, make_user):
    admin = make_user('boss', is_admin=True)
    employer, worker, job, application, escrow = hired()
    make_proof(employer, worker, job, application, status='rejected',
               rejection_deadline=datetime.utcnow() - timedelta(minutes=1))

    login(client, admin)
    response = client.post('/api/admin/work-proofs/process-timeouts')
    assert response.status_code == 200
    assert response.get_json()['summary']['rejections_refunded'] == 1


def test_admin_revision_settings_validation(client, make_user, login):
    login(client, make_user('boss', is_admin=True))
    assert client.put('/api/admin/settings/revision', json={'revision_request_timeout': 0}).status_code == 400
    assert client.put('/api/admin/settings/revision', json={'rejection_response_timeout_unit': 'weeks'}).status_code == 400
    assert client.put('/api/admin/settings/revision', json={'max_revision_requests': 11}).status_code == 400

    response = client.put('/api/admin/settings/revision', json={
        'revision_request_timeout': 2, 'revision_request_timeout_unit': 'days', 'max_revision_requests': 0
    })
    assert response.status_code == 200
    settings = client.get('/api/settings/revision').get_json()
    assert settings['revision_request_timeout_unit'] == 'days'
    assert settings['max_revision_requests'] == 0
    assert settings['refund_on_rejection_timeout'] is True


def test_format_countdown():
    now = datetime(2024, 5, 1, 12, 0, 0)
    assert format_countdown(now + timedelta(hours=2, minutes=5), 'rejected', now)['text'] == '2h 5m left'
    assert format_countdown(now + timedelta(minutes=3, seconds=9), 'rejected', now)['text'] == '3m 9s left'
    assert format_countdown(now + timedelta(seconds=42), 'revision_requested', now)['text'] == '42s left'

    expired = format_countdown(now - timedelta(seconds=1), 'rejected', now)
    assert expired == {'text': 'EXPIRED', 'seconds_remaining': 0, 'expired': True}
    assert format_countdown(None, 'rejected_accepted', now)['text'] == 'AUTO_PROCESSED'
    assert format_countdown(None, 'submitted', now) is None


def test_work_proof_detail_access(client, hired, login, make_user):
    employer, worker, job, application, escrow = hired()
    proof = make_proof(employer, worker, job, application, status='rejected',
                       rejection_deadline=datetime.utcnow() + timedelta(minutes=30))

    login(client, employer)
    detail = client.get(f'/api/work-proofs/{proof.id}').get_json()
    assert detail['countdown']['expired'] is False
    assert len(client.get(f'/api/jobs/{job.id}/work-proofs').get_json()['work_proofs']) == 1

    login(client, make_user('stranger'))
    assert client.get(f'/api/work-proofs/{proof.id}').status_code == 403
    assert client.get(f'/api/jobs/{job.id}/work-proofs').get_json()['work_proofs'] == []
