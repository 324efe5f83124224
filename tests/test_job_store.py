"""
Job store tests: creation, versioned updates and history
"""
import pytest

from errors import ConflictError, NotFoundError, ValidationError
from services import job_store


class TestJobCreation:
    """Test creating pending jobs"""

    def test_create_job_defaults_final_amount_to_item_total(self, make_job, seller):
        job = make_job()

        assert job.status == 'pending'
        assert job.version == 1
        assert job.seller_id == seller.actor_id
        assert job.contractor_id is None
        assert job.final_amount == 100000
        assert [item['total_price'] for item in job.items] == [80000, 20000]

    def test_create_job_records_initial_history(self, make_job):
        job = make_job()

        assert len(job.progress_history) == 1
        assert job.progress_history[0]['status'] == 'pending'

    def test_explicit_final_amount_wins(self, make_job):
        job = make_job(final_amount=95000)
        assert job.final_amount == 95000

    def test_item_total_must_match_quantity_times_price(self, make_job):
        with pytest.raises(ValidationError):
            make_job(items=[{'name': 'Curtain rod', 'quantity': 3, 'unit_price': 1000, 'total_price': 2500}])

    def test_item_quantity_must_be_positive(self, make_job):
        with pytest.raises(ValidationError):
            make_job(items=[{'name': 'Curtain rod', 'quantity': 0, 'unit_price': 1000}])

    def test_budget_min_cannot_exceed_max(self, make_job):
        with pytest.raises(ValidationError):
            make_job(budget={'min': 200000, 'max': 100000})

    def test_seller_is_required(self, app):
        with pytest.raises(ValidationError):
            job_store.create_job({'items': []})

    def test_scheduled_date_is_parsed(self, make_job):
        job = make_job(scheduled_date='2026-03-01T09:30:00Z')
        assert job.scheduled_date.isoformat() == '2026-03-01T09:30:00'

    def test_pickup_info_keeps_known_fields(self, make_job):
        job = make_job(pickup_info={'company_name': 'Fabric Co', 'phone': '010-1234', 'color': 'blue'})
        assert job.pickup_info == {'company_name': 'Fabric Co', 'phone': '010-1234'}


class TestVersionedUpdates:
    """Test optimistic version checks on job writes"""

    def test_update_bumps_version(self, make_job):
        job = make_job()
        updated = job_store.update_job(job.id, {'title': 'Bedroom curtains'}, expected_version=1)

        assert updated.version == 2
        assert updated.title == 'Bedroom curtains'

    def test_stale_version_is_rejected(self, make_job):
        job = make_job()
        job_store.update_job(job.id, {'title': 'First'}, expected_version=1)

        with pytest.raises(ConflictError):
            job_store.update_job(job.id, {'title': 'Second'}, expected_version=1)

        assert job_store.get_job(job.id, refresh=True).title == 'First'

    def test_extra_precondition_is_enforced(self, make_job):
        job = make_job()
        job_store.update_job(job.id, {'customer_id': 'customer-1'}, expected_version=1)

        with pytest.raises(ConflictError):
            job_store.update_job(job.id, {'title': 'x'}, expected_version=2, expect={'customer_id': None})

    def test_status_change_appends_one_history_entry(self, make_job):
        job = make_job()
        updated = job_store.update_job(job.id, {'status': 'cancelled'}, expected_version=1, note='seller changed mind')

        assert len(updated.progress_history) == 2
        assert updated.progress_history[-1]['status'] == 'cancelled'
        assert updated.progress_history[-1]['note'] == 'seller changed mind'

    def test_non_status_update_leaves_history_alone(self, make_job):
        job = make_job()
        updated = job_store.update_job(job.id, {'address': '99 River Street'}, expected_version=1)
        assert len(updated.progress_history) == 1

    def test_history_keeps_actor_apart_from_contractor(self, engine, make_job, seller):
        job = make_job()
        cancelled = engine.request_transition(job.id, 'cancelled', seller, reason='no longer needed')

        entry = cancelled.progress_history[-1]
        assert entry['status'] == 'cancelled'
        assert entry['contractor_id'] is None
        assert entry['actor_id'] == seller.actor_id
        assert entry['note'] == 'no longer needed'

    def test_history_records_assigned_contractor(self, engine, make_job, fund, seller, contractor):
        fund(seller, 100000)
        job = engine.request_transition(make_job().id, 'assigned', seller, contractor_id=contractor.actor_id)

        entry = job.progress_history[-1]
        assert entry['contractor_id'] == contractor.actor_id
        assert entry['actor_id'] == seller.actor_id


    def test_unknown_fields_are_rejected(self, make_job):
        job = make_job()
        with pytest.raises(ValidationError):
            job_store.update_job(job.id, {'version': 10}, expected_version=1)

    def test_missing_job(self, app):
        with pytest.raises(NotFoundError):
            job_store.get_job('does-not-exist')


class TestJobQueries:
    """Test listing jobs"""

    def test_list_by_seller_and_status(self, make_job, other_seller):
        first = make_job()
        make_job(seller_id=other_seller.actor_id)

        assert [job.id for job in job_store.list_jobs_by_seller(first.seller_id)] == [first.id]
        assert len(job_store.list_jobs_by_status('pending')) == 2

    def test_list_by_contractor(self, assigned_job, contractor):
        jobs = job_store.list_jobs_by_contractor(contractor.actor_id)
        assert [job.id for job in jobs] == [assigned_job.id]

    def test_unknown_status_filter(self, app):
        with pytest.raises(ValidationError):
            job_store.list_jobs_by_status('archived')


class TestFinalAmountAndSatisfaction:
    """Test price confirmation and customer ratings"""

    def test_final_amount_changes_only_while_pending(self, make_job, assigned_job):
        job = make_job()
        updated = job_store.update_final_amount(job.id, 110000, expected_version=1)
        assert updated.final_amount == 110000

        with pytest.raises(ValidationError):
            job_store.update_final_amount(assigned_job.id, 120000, expected_version=assigned_job.version)

    def test_satisfaction_requires_completed_job(self, make_job):
        job = make_job()
        with pytest.raises(ValidationError):
            job_store.record_satisfaction(job.id, 5)

    def test_satisfaction_range(self, assigned_job, advance, contractor):
        job = advance(assigned_job.id, contractor, 'completed')

        with pytest.raises(ValidationError):
            job_store.record_satisfaction(job.id, 6)

        rated = job_store.record_satisfaction(job.id, 4, comment='Neat work')
        assert rated.customer_satisfaction == 4
        assert rated.satisfaction_comment == 'Neat work'
