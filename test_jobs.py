"""Job posting, listing, worker count changes and favorites"""
import json
from datetime import datetime, timedelta

from app import db, Category, Application, RotationTracking, set_site_setting


def test_create_job_open_by_default(client, make_user, login):
    login(client, make_user('employer'))
    category = Category.query.filter_by(slug='writing').first()

    response = client.post('/api/jobs', json={
        'title': 'Write a 100 word product review',
        'description': 'Review our mobile app on the store',
        'budget_min': 2,
        'budget_max': 3,
        'workers_needed': 10,
        'category_id': category.id
    })
    assert response.status_code == 201
    job = response.get_json()['job']
    assert job['status'] == 'open'
    assert job['slots_available'] == 10
    assert job['category']['slug'] == 'writing'


def test_create_job_validation(client, make_user, login):
    login(client, make_user('employer'))
    assert client.post('/api/jobs', json={'title': 'x'}).status_code == 400
    assert client.post('/api/jobs', json={
        'title': 'x', 'description': 'y', 'budget_min': 5, 'budget_max': 1
    }).status_code == 400
    assert client.post('/api/jobs', json={
        'title': 'x', 'description': 'y', 'budget_min': 1, 'workers_needed': 0
    }).status_code == 400
    assert client.post('/api/jobs', json={
        'title': 'x', 'description': 'y', 'budget_min': 1, 'category_id': 9999
    }).status_code == 400


def test_job_approval_flow(client, make_user, login):
    admin = make_user('boss', is_admin=True)
    employer = make_user('employer')
    set_site_setting('job_approval_required', 'true')

    login(client, employer)
    created = client.post('/api/jobs', json={'title': 'Tag photos', 'description': 'Tag 50 photos', 'budget_min': 1})
    assert created.get_json()['job']['status'] == 'pending'
    job_id = created.get_json()['job']['id']

    assert client.get('/api/jobs').get_json()['jobs'] == []

    login(client, admin)
    assert client.post(f'/api/admin/jobs/{job_id}/review', json={'action': 'reject'}).status_code == 400
    response = client.post(f'/api/admin/jobs/{job_id}/review', json={'action': 'approve'})
    assert response.status_code == 200
    assert response.get_json()['job']['status'] == 'approved'

    assert [j['id'] for j in client.get('/api/jobs').get_json()['jobs']] == [job_id]


def test_list_jobs_filters(client, make_user, make_job):
    employer = make_user('employer')
    now = datetime.utcnow()
    design = Category.query.filter_by(slug='design').first()
    cheap = make_job(employer, title='Like a post', budget_min=0.5, budget_max=1, created_at=now - timedelta(hours=2))
    logo = make_job(employer, title='Design a logo', description='Simple vector logo', budget_min=20,
                    budget_max=40, category_id=design.id, created_at=now - timedelta(hours=1))
    make_job(employer, title='Paused job', status='paused')

    everything = client.get('/api/jobs').get_json()
    assert [j['id'] for j in everything['jobs']] == [logo.id, cheap.id]
    assert everything['algorithm']['type'] == 'newest_first'

    by_slug = client.get('/api/jobs?category=design').get_json()['jobs']
    assert [j['id'] for j in by_slug] == [logo.id]

    by_id = client.get(f'/api/jobs?category={design.id}').get_json()['jobs']
    assert [j['id'] for j in by_id] == [logo.id]

    search = client.get('/api/jobs?search=VECTOR').get_json()['jobs']
    assert [j['id'] for j in search] == [logo.id]

    # Both bounds are needed for the budget filter
    overlap = client.get('/api/jobs?budgetMin=30&budgetMax=100').get_json()['jobs']
    assert [j['id'] for j in overlap] == [logo.id]
    assert len(client.get('/api/jobs?budgetMin=30').get_json()['jobs']) == 2


def test_highest_budget_ordering(client, make_user, make_job):
    employer = make_user('employer')
    low = make_job(employer, budget_max=5)
    high = make_job(employer, budget_max=50)
    set_site_setting('microjob_algorithm', json.dumps({'algorithm_type': 'highest_budget'}))

    jobs = client.get('/api/jobs').get_json()['jobs']
    assert [j['id'] for j in jobs] == [high.id, low.id]


def test_time_rotation_records_front_page_entries(client, make_user, make_job):
    employer = make_user('employer')
    jobs = [make_job(employer, title=f'Job {i}') for i in range(3)]
    set_site_setting('microjob_algorithm', json.dumps({
        'algorithm_type': 'time_rotation', 'rotation_hours': 6, 'front_page_size': 2
    }))

    response = client.get('/api/jobs')
    assert response.status_code == 200
    assert response.get_json()['algorithm']['rotation_hours'] == 6

    rows = RotationTracking.query.all()
    assert len(rows) == 2
    assert all(row.rotation_cycle == 1 for row in rows)
    assert all(row.front_page_duration_minutes == 360 for row in rows)
    assert {row.job_id for row in rows} < {job.id for job in jobs}


def test_update_worker_count(client, make_user, make_job, login):
    employer = make_user('employer')
    other = make_user('other')
    job = make_job(employer, workers_needed=3)
    db.session.add(Application(job_id=job.id, applicant_id=other.id, proposed_budget=5, status='pending'))
    job.applications_count = 1
    db.session.commit()

    login(client, employer)
    missing = client.put('/api/jobs', json={'jobId': job.id})
    assert missing.status_code == 400
    assert missing.get_json()['success'] is False

    mismatch = client.put('/api/jobs', json={'jobId': job.id, 'newWorkerCount': 5, 'userId': other.id})
    assert mismatch.status_code == 403

    too_few = client.put('/api/jobs', json={'jobId': job.id, 'newWorkerCount': 0})
    assert too_few.status_code == 400

    response = client.put('/api/jobs', json={'jobId': job.id, 'newWorkerCount': 5, 'userId': employer.id})
    assert response.status_code == 200
    assert response.get_json()['job']['workers_needed'] == 5

    login(client, other)
    assert client.put('/api/jobs', json={'jobId': job.id, 'newWorkerCount': 2}).status_code == 403


def test_worker_count_cannot_drop_below_slots_in_use(client, make_user, make_job, login):
    employer = make_user('employer')
    job = make_job(employer, workers_needed=3)
    for name in ('w1', 'w2'):
        worker = make_user(name)
        db.session.add(Application(job_id=job.id, applicant_id=worker.id, proposed_budget=5, status='pending'))
    job.applications_count = 2
    db.session.commit()

    login(client, employer)
    response = client.put('/api/jobs', json={'jobId': job.id, 'newWorkerCount': 1})
    assert response.status_code == 400
    assert '2 already applied' in response.get_json()['message']


def test_job_detail_counts_views_for_visitors(client, make_user, make_job, login):
    employer = make_user('employer')
    job = make_job(employer)

    client.get(f'/api/jobs/{job.id}')
    client.get(f'/api/jobs/{job.id}')
    login(client, employer)
    data = client.get(f'/api/jobs/{job.id}').get_json()
    assert data['views'] == 2
    assert data['is_favorite'] is False

    assert client.get('/api/jobs/9999').status_code == 404


def test_pause_resume_and_cancel(client, make_user, make_job, login):
    employer = make_user('employer')
    worker = make_user('worker')
    job = make_job(employer)
    db.session.add(Application(job_id=job.id, applicant_id=worker.id, proposed_budget=5, status='pending'))
    job.applications_count = 1
    db.session.commit()

    login(client, employer)
    assert client.post(f'/api/jobs/{job.id}/status', json={'action': 'resume'}).status_code == 400
    assert client.post(f'/api/jobs/{job.id}/status', json={'action': 'pause'}).get_json()['job']['status'] == 'paused'
    assert client.post(f'/api/jobs/{job.id}/status', json={'action': 'resume'}).get_json()['job']['status'] == 'open'

    cancelled = client.post(f'/api/jobs/{job.id}/status', json={'action': 'cancel'})
    assert cancelled.get_json()['job']['status'] == 'cancelled'
    assert Application.query.filter_by(job_id=job.id).first().status == 'rejected'


def test_cancel_blocked_while_escrow_held(client, hired, login):
    employer, worker, job, application, escrow = hired()
    login(client, employer)
    response = client.post(f'/api/jobs/{job.id}/status', json={'action': 'cancel'})
    assert response.status_code == 400


def test_dashboard_feed_excludes_own_applied_and_full_jobs(client, make_user, make_job, login):
    employer = make_user('employer')
    worker = make_user('worker')
    open_job = make_job(employer)
    applied = make_job(employer)
    full = make_job(employer, workers_needed=1, applications_count=1)
    make_job(worker)
    db.session.add(Application(job_id=applied.id, applicant_id=worker.id, proposed_budget=5))
    db.session.commit()

    login(client, worker)
    jobs = client.get('/api/dashboard/jobs').get_json()['jobs']
    assert [j['id'] for j in jobs] == [open_job.id]
    assert full.id not in [j['id'] for j in jobs]


def test_thumbnail_falls_back_to_category(client, make_user, make_job):
    category = Category.query.filter_by(slug='social-media').first()
    category.thumbnail_url = 'https://cdn.example.com/social.png'
    db.session.commit()
    job = make_job(make_user('employer'))

    data = client.get(f'/api/jobs/{job.id}').get_json()
    assert data['thumbnail_url'] == 'https://cdn.example.com/social.png'


def test_favorites(client, make_user, make_job, login):
    employer = make_user('employer')
    job = make_job(employer)
    login(client, make_user('worker'))

    assert client.post('/api/favorites', json={}).status_code == 400
    assert client.post('/api/favorites', json={'jobId': 9999}).status_code == 404

    created = client.post('/api/favorites', json={'jobId': job.id})
    assert created.status_code == 201
    assert client.post('/api/favorites', json={'jobId': job.id}).status_code == 409

    favorites = client.get('/api/favorites').get_json()
    assert len(favorites) == 1
    assert favorites[0]['favoriteId'] == created.get_json()['favoriteId']
    assert favorites[0]['users']['username'] == 'employer'
    assert favorites[0]['categories']['slug'] == 'social-media'

    assert client.get(f'/api/jobs/{job.id}').get_json()['is_favorite'] is True

    assert client.delete('/api/favorites', json={}).status_code == 400
    assert client.delete('/api/favorites', json={'jobId': job.id}).get_json() == {'success': True}
    assert client.get('/api/favorites').get_json() == []


def test_my_jobs_lists_posted_jobs(client, make_user, make_job, login):
    employer = make_user('employer')
    make_job(employer)
    make_job(make_user('someone'))
    login(client, employer)

    jobs = client.get('/api/my-jobs').get_json()['jobs']
    assert len(jobs) == 1
    assert jobs[0]['pending_applications'] == 0
