"""Listing order algorithms, without the database"""
from datetime import datetime, timedelta
from types import SimpleNamespace

from job_algorithm import MicrojobAlgorithmService


NOW = datetime(2024, 5, 1, 12, 0, 0)


def job(job_id, hours_old=0, budget_max=10):
    return SimpleNamespace(id=job_id, created_at=NOW - timedelta(hours=hours_old), budget_max=budget_max)


def shown(hours_ago):
    return SimpleNamespace(last_front_page_at=NOW - timedelta(hours=hours_ago))


def test_normalize_settings_falls_back_for_unknown_algorithm():
    service = MicrojobAlgorithmService(None, None)
    settings = service.normalize_settings({'algorithm_type': 'popular', 'rotation_hours': 0, 'front_page_size': None})
    assert settings['algorithm_type'] == 'newest_first'
    assert settings['rotation_hours'] == 1
    assert settings['front_page_size'] == 20


def test_newest_first_and_highest_budget():
    jobs = [job(1, hours_old=5, budget_max=50), job(2, hours_old=1, budget_max=5), job(3, hours_old=3, budget_max=50)]
    assert [j.id for j in MicrojobAlgorithmService.newest_first(jobs)] == [2, 3, 1]
    # Equal budgets fall back to newest first
    assert [j.id for j in MicrojobAlgorithmService.highest_budget(jobs)] == [3, 1, 2]


def test_rotation_keeps_showing_jobs_on_top():
    jobs = [job(1, hours_old=1), job(2, hours_old=2), job(3, hours_old=3), job(4, hours_old=4)]
    tracking = {
        3: shown(hours_ago=2),    # still inside its 24h window
        4: shown(hours_ago=30),   # window expired
        1: shown(hours_ago=48),   # expired earlier
    }

    ordered, entering = MicrojobAlgorithmService.rotation_order(jobs, tracking, 24, 2, NOW)

    assert [j.id for j in ordered] == [3, 2, 1, 4]
    assert [j.id for j in entering] == [2]


def test_rotation_with_nothing_tracked_fills_front_page_newest_first():
    jobs = [job(1, hours_old=3), job(2, hours_old=1), job(3, hours_old=2)]
    ordered, entering = MicrojobAlgorithmService.rotation_order(jobs, {}, 24, 2, NOW)
    assert [j.id for j in ordered] == [2, 3, 1]
    assert [j.id for j in entering] == [2, 3]


def test_rotation_window_boundary_counts_as_expired():
    jobs = [job(1), job(2, hours_old=1)]
    tracking = {1: shown(hours_ago=24)}
    ordered, entering = MicrojobAlgorithmService.rotation_order(jobs, tracking, 24, 1, NOW)
    assert [j.id for j in ordered] == [2, 1]
    assert [j.id for j in entering] == [2]


def test_disabled_algorithm_uses_newest_first():
    service = MicrojobAlgorithmService(None, None)
    jobs = [job(1, hours_old=2, budget_max=100), job(2, hours_old=1, budget_max=1)]
    ordered = service.order_jobs(jobs, {'is_enabled': False, 'algorithm_type': 'highest_budget'}, NOW)
    assert [j.id for j in ordered] == [2, 1]


def test_random_keeps_every_job():
    service = MicrojobAlgorithmService(None, None)
    jobs = [job(i) for i in range(10)]
    ordered = service.order_jobs(jobs, {'algorithm_type': 'random'}, NOW)
    assert sorted(j.id for j in ordered) == list(range(10))
