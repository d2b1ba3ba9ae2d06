"""
Microjob Listing Algorithm Service
Orders the public job listing and rotates jobs through the front page
"""

import random
from datetime import datetime, timedelta
from typing import List, Dict, Tuple
import logging

logger = logging.getLogger(__name__)


class MicrojobAlgorithmService:
    """
    Applies the admin-selected ordering to a list of jobs.

    With ``time_rotation`` every job gets a turn on the front page: a job that
    enters the front page keeps its slot for ``rotation_hours`` and then moves
    behind the jobs that have not been shown yet.
    """

    ALGORITHM_TYPES = ('newest_first', 'highest_budget', 'random', 'time_rotation')

    DEFAULT_SETTINGS = {
        'is_enabled': True,
        'algorithm_type': 'newest_first',
        'rotation_hours': 24,
        'front_page_size': 20
    }

    def __init__(self, db, RotationTracking):
        """
        Args:
            db: SQLAlchemy database instance
            RotationTracking: RotationTracking model class
        """
        self.db = db
        self.RotationTracking = RotationTracking

    def normalize_settings(self, settings: Dict) -> Dict:
        merged = dict(self.DEFAULT_SETTINGS)
        merged.update({k: v for k, v in (settings or {}).items() if v is not None})

        if merged['algorithm_type'] not in self.ALGORITHM_TYPES:
            logger.warning(f"Unknown algorithm type {merged['algorithm_type']!r}, using newest_first")
            merged['algorithm_type'] = 'newest_first'

        merged['rotation_hours'] = max(1, int(merged['rotation_hours']))
        merged['front_page_size'] = max(1, int(merged['front_page_size']))
        merged['is_enabled'] = bool(merged['is_enabled'])
        return merged

    @staticmethod
    def newest_first(jobs: List) -> List:
        return sorted(jobs, key=lambda j: j.created_at or datetime.min, reverse=True)

    @staticmethod
    def highest_budget(jobs: List) -> List:
        return sorted(
            jobs,
            key=lambda j: (j.budget_max or 0, j.created_at or datetime.min),
            reverse=True
        )

    @staticmethod
    def rotation_order(jobs: List, tracking: Dict, rotation_hours: int,
                       front_page_size: int, now: datetime) -> Tuple[List, List]:
        """
        Order jobs for time rotation.

        Args:
            jobs: Job objects (need ``id`` and ``created_at``)
            tracking: Map of job id to its rotation row (``last_front_page_at``)
            rotation_hours: How long a job keeps its front-page slot
            front_page_size: Number of front-page slots
            now: Reference time

        Returns:
            (ordered jobs, jobs entering the front page with this ordering)
        """
        window = timedelta(hours=rotation_hours)
        showing, unseen, expired = [], [], []

        for job in jobs:
            row = tracking.get(job.id)
            last_shown = row.last_front_page_at if row else None
            if last_shown is None:
                unseen.append(job)
            elif last_shown + window > now:
                showing.append(job)
            else:
                expired.append(job)

        showing.sort(key=lambda j: tracking[j.id].last_front_page_at)
        unseen.sort(key=lambda j: j.created_at or datetime.min, reverse=True)
        expired.sort(key=lambda j: tracking[j.id].last_front_page_at)

        ordered = showing + unseen + expired
        showing_ids = {j.id for j in showing}
        entering = [j for j in ordered[:front_page_size] if j.id not in showing_ids]
        return ordered, entering

    def order_jobs(self, jobs: List, settings: Dict, now: datetime = None) -> List:
        """Return jobs in listing order, recording front-page entries for time rotation"""
        settings = self.normalize_settings(settings)
        now = now or datetime.utcnow()

        if not settings['is_enabled']:
            return self.newest_first(jobs)

        algorithm = settings['algorithm_type']
        if algorithm == 'highest_budget':
            return self.highest_budget(jobs)
        if algorithm == 'random':
            shuffled = list(jobs)
            random.shuffle(shuffled)
            return shuffled
        if algorithm == 'time_rotation':
            tracking = self.load_tracking([j.id for j in jobs])
            ordered, entering = self.rotation_order(
                jobs, tracking, settings['rotation_hours'], settings['front_page_size'], now
            )
            self.record_front_page(entering, tracking, settings['rotation_hours'], now)
            return ordered

        return self.newest_first(jobs)

    def load_tracking(self, job_ids: List[int]) -> Dict:
        if not job_ids:
            return {}
        rows = self.RotationTracking.query.filter(self.RotationTracking.job_id.in_(job_ids)).all()
        return {row.job_id: row for row in rows}

    def record_front_page(self, jobs: List, tracking: Dict, rotation_hours: int, now: datetime):
        """
        Upsert rotation rows for jobs that just reached the front page.
        Failures are logged; the listing is served either way.
        """
        if not jobs:
            return

        try:
            for job in jobs:
                row = tracking.get(job.id)
                if row is None:
                    row = self.RotationTracking(
                        job_id=job.id,
                        front_page_duration_minutes=0,
                        rotation_cycle=0
                    )
                    self.db.session.add(row)
                    tracking[job.id] = row

                row.last_front_page_at = now
                row.front_page_duration_minutes = (row.front_page_duration_minutes or 0) + rotation_hours * 60
                row.rotation_cycle = (row.rotation_cycle or 0) + 1
                row.updated_at = now

            self.db.session.commit()
            logger.info(f"Rotated {len(jobs)} job(s) onto the front page")
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Error updating rotation tracking: {str(e)}")
