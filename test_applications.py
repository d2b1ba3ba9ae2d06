"""Applying to jobs, accepting into escrow and the worker's applied-jobs view"""
from datetime import datetime, timedelta

from app import db, Application, Escrow, Notification, WorkProof, Microjob, get_or_create_wallet


def test_apply_to_job(client, make_user, make_job, login):
    employer = make_user('employer')
    worker = make_user('worker')
    job = make_job(employer, budget_min=5, budget_max=10)
    login(client, worker)

    response = client.post(f'/api/jobs/{job.id}/apply', json={
        'proposed_budget': 7,
        'cover_letter': 'I have done this many times',
        'portfolio_links': ['https://portfolio.example.com/me']
    })
    assert response.status_code == 201
    application = response.get_json()['application']
    assert application['proposed_budget'] == 7
    assert application['portfolio_links'] == ['https://portfolio.example.com/me']

    assert db.session.get(Microjob, job.id).applications_count == 1
    assert Notification.query.filter_by(user_id=employer.id, notification_type='application').count() == 1

    duplicate = client.post(f'/api/jobs/{job.id}/apply', json={})
    assert duplicate.status_code == 409


def test_apply_validation(client, make_user, make_job, login):
    employer = make_user('employer')
    job = make_job(employer, budget_min=5, budget_max=10, workers_needed=1)

    login(client, employer)
    assert client.post(f'/api/jobs/{job.id}/apply', json={}).status_code == 400

    login(client, make_user('worker'))
    assert client.post(f'/api/jobs/{job.id}/apply', json={'proposed_budget': 50}).status_code == 400
    assert client.post(f'/api/jobs/{job.id}/apply', json={'portfolio_links': 'javascript:alert(1)'}).status_code == 400
    assert client.post('/api/jobs/9999/apply', json={}).status_code == 404

    # Budget defaults to the job's maximum
    response = client.post(f'/api/jobs/{job.id}/apply', json={})
    assert response.get_json()['application']['proposed_budget'] == 10

    login(client, make_user('late'))
    full = client.post(f'/api/jobs/{job.id}/apply', json={})
    assert full.status_code == 400
    assert full.get_json()['error'] == 'This job has no open slots'


def test_accept_funds_escrow_from_deposit_then_earnings(client, make_user, make_job, login):
    employer = make_user('employer', deposit=4.0, earnings=10.0)
    worker = make_user('worker')
    job = make_job(employer, budget_min=5, budget_max=10)
    application = Application(job_id=job.id, applicant_id=worker.id, proposed_budget=8, status='pending')
    db.session.add(application)
    db.session.commit()

    login(client, employer)
    response = client.post(f'/api/applications/{application.id}/accept')
    assert response.status_code == 200
    assert response.get_json()['escrow']['status'] == 'funded'
    assert response.get_json()['escrow']['status_label'] == 'Funds Held in Escrow'

    wallet = get_or_create_wallet(employer.id)
    assert wallet.deposit_balance == 0
    assert wallet.earnings_balance == 6.0
    assert wallet.held_balance == 8.0

    again = client.post(f'/api/applications/{application.id}/accept')
    assert again.status_code == 400


def test_accept_requires_balance(client, make_user, make_job, login):
    employer = make_user('employer', deposit=1.0)
    worker = make_user('worker')
    job = make_job(employer)
    application = Application(job_id=job.id, applicant_id=worker.id, proposed_budget=10, status='pending')
    db.session.add(application)
    db.session.commit()

    login(client, worker)
    assert client.post(f'/api/applications/{application.id}/accept').status_code == 403

    login(client, employer)
    response = client.post(f'/api/applications/{application.id}/accept')
    assert response.status_code == 400
    assert 'Insufficient balance' in response.get_json()['error']
    assert Escrow.query.count() == 0
    assert db.session.get(Application, application.id).status == 'pending'


def test_reject_application_frees_slot(client, make_user, make_job, login):
    employer = make_user('employer')
    worker = make_user('worker')
    job = make_job(employer, applications_count=1)
    application = Application(job_id=job.id, applicant_id=worker.id, proposed_budget=10, status='pending')
    db.session.add(application)
    db.session.commit()

    login(client, employer)
    response = client.post(f'/api/applications/{application.id}/reject')
    assert response.status_code == 200
    assert response.get_json()['application']['status'] == 'rejected'
    assert db.session.get(Microjob, job.id).applications_count == 0


def test_job_applications_visible_to_owner_only(client, hired, login, make_user):
    employer, worker, job, application, escrow = hired()

    login(client, employer)
    applications = client.get(f'/api/jobs/{job.id}/applications').get_json()['applications']
    assert applications[0]['escrow']['amount'] == 10.0
    assert applications[0]['work_proof'] is None

    login(client, make_user('nosy'))
    assert client.get(f'/api/jobs/{job.id}/applications').status_code == 403


def test_applied_jobs_priority_and_actions(client, hired, make_job, login):
    employer, worker, job, application, escrow = hired()

    # A second assignment whose rejection was auto-refunded
    other_job = make_job(employer, title='Retweet our launch')
    other = Application(job_id=other_job.id, applicant_id=worker.id, proposed_budget=5, status='cancelled')
    db.session.add(other)
    db.session.flush()
    db.session.add(WorkProof(
        job_id=other_job.id, application_id=other.id, worker_id=worker.id, employer_id=employer.id,
        description='done', status='rejected_accepted', auto_processed=True
    ))
    db.session.commit()

    login(client, worker)
    body = client.get('/api/applications/mine').get_json()

    statuses = [item['display_status'] for item in body['applications']]
    assert statuses == ['ready', 'auto_refunded']
    assert body['applications'][0]['actions'] == ['submit']
    assert body['applications'][1]['countdown']['text'] == 'AUTO_PROCESSED'
    assert body['status_counts'] == {'ready': 1, 'auto_refunded': 1}
    assert body['pagination']['per_page'] == 5

    only_ready = client.get('/api/applications/mine?status=ready').get_json()
    assert len(only_ready['applications']) == 1

    searched = client.get('/api/applications/mine?search=retweet').get_json()
    assert [item['job']['id'] for item in searched['applications']] == [other_job.id]


def test_applied_jobs_shows_rejection_countdown(client, hired, login):
    employer, worker, job, application, escrow = hired()
    db.session.add(WorkProof(
        job_id=job.id, application_id=application.id, worker_id=worker.id, employer_id=employer.id,
        description='done', status='rejected', rejection_reason='Blurry screenshot',
        rejection_deadline=datetime.utcnow() + timedelta(hours=5, minutes=30)
    ))
    db.session.commit()

    login(client, worker)
    item = client.get('/api/applications/mine').get_json()['applications'][0]
    assert item['display_status'] == 'rejected'
    assert item['actions'] == ['accept_rejection', 'dispute', 'cancel']
    assert item['countdown']['text'].startswith('5h ')
    assert item['countdown']['expired'] is False
