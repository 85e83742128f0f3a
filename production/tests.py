import math
from io import StringIO
from datetime import date
from django.conf import settings
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase
from django.test.client import Client
from .calculations import (
    HeaderInputs, InvalidSubmission, TargetCalculator, VarianceEngine, EfficiencyAggregator,
    recompute_hourly_metrics, validate_submission
)
from .models import (
    ProductionUser, QualityInspector, ProductionHeader, HourlyProduction, HourlyInspection
)
from .services import HourlyProductionService


SCENARIO_HEADER = HeaderInputs.from_values(
    working_hour=8, manpower_present=30, smv=1.2, plan_efficiency=90, today_target=10800
)


class TargetCalculatorTest(SimpleTestCase):
    """Test base hourly target selection."""

    def test_capacity_target_preferred(self):
        """Manpower x 60 x plan efficiency / SMV wins over the day-target split."""
        base = TargetCalculator.compute_base_target_per_hour(SCENARIO_HEADER)
        self.assertAlmostEqual(base, 1350.0, places=6)

    def test_falls_back_to_day_target_split(self):
        """Without manpower/SMV the day target is split evenly across working hours."""
        header = HeaderInputs.from_values(working_hour=8, today_target=800)
        self.assertAlmostEqual(TargetCalculator.compute_base_target_per_hour(header), 100.0)

        header = HeaderInputs.from_values(working_hour=8, manpower_present=30, smv=0, today_target=800)
        self.assertAlmostEqual(TargetCalculator.compute_base_target_per_hour(header), 100.0)

    def test_zero_working_hours_and_no_capacity(self):
        """Missing or zero working hours leave one hour slot and a zero target."""
        for working_hour in (0, None, -3):
            header = HeaderInputs.from_values(working_hour=working_hour, today_target=800)
            self.assertEqual(header.effective_working_hours, 1)
            self.assertEqual(TargetCalculator.compute_base_target_per_hour(header), 0.0)

    def test_garbage_inputs_normalize_to_zero(self):
        """Blank, non-numeric and non-finite header values behave as 0."""
        header = HeaderInputs.from_values(
            working_hour=float('nan'), manpower_present="abc", smv=None,
            plan_efficiency=float('inf'), today_target=""
        )
        self.assertEqual(header, HeaderInputs())
        self.assertEqual(TargetCalculator.compute_base_target_per_hour(header), 0.0)

    def test_base_target_constant_across_hours(self):
        """Every hour of a day carries the same base target."""
        metrics = recompute_hourly_metrics(SCENARIO_HEADER, [(h, 900 + 50 * h) for h in range(1, 9)])
        self.assertEqual({m.base_target_per_hour for m in metrics}, {metrics[0].base_target_per_hour})


class VarianceEngineTest(SimpleTestCase):
    """Test the carry-forward shortfall recurrence."""

    def test_scenario_shortfall_carried(self):
        """Two under-target hours: the first hour's deficit raises the second hour's target."""
        first, second = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (2, 1000)])

        self.assertAlmostEqual(first.dynamic_target, 1350)
        self.assertAlmostEqual(first.variance_qty, -350)
        self.assertEqual(first.shortfall, 0)

        self.assertAlmostEqual(second.shortfall, 350)
        self.assertAlmostEqual(second.dynamic_target, 1700)
        self.assertAlmostEqual(second.variance_qty, -700)

    def test_scenario_surplus_not_carried(self):
        """Running ahead gives a positive variance but never lowers later targets."""
        first, second = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1500), (2, 1000)])

        self.assertAlmostEqual(first.variance_qty, 150)
        self.assertEqual(second.shortfall, 0)
        self.assertAlmostEqual(second.dynamic_target, 1350)
        self.assertAlmostEqual(second.variance_qty, -350)

    def test_surplus_never_lowers_target_below_base(self):
        """An hour above base gives the next hour the same target as an hour exactly at base."""
        base = TargetCalculator.compute_base_target_per_hour(SCENARIO_HEADER)
        with_surplus = VarianceEngine.run(base, {1: 2000, 2: 200, 3: 900, 4: 1000})
        at_base = VarianceEngine.run(base, {1: base, 2: 200, 3: 900, 4: 1000})

        self.assertEqual(with_surplus[1].dynamic_target, base)
        self.assertEqual(with_surplus[1].dynamic_target, at_base[1].dynamic_target)
        for step in with_surplus:
            self.assertGreaterEqual(step.dynamic_target, base)

    def test_shortfall_never_negative(self):
        """Shortfall stays >= 0 whatever the output pattern."""
        base = TargetCalculator.compute_base_target_per_hour(SCENARIO_HEADER)
        steps = VarianceEngine.run(base, {1: 0, 2: 5000, 3: 0, 4: 1350, 5: 3000, 6: 10})
        for step in steps:
            self.assertGreaterEqual(step.shortfall, 0)
            self.assertAlmostEqual(step.dynamic_target, base + step.shortfall)

    def test_gap_hours_count_as_zero_output(self):
        """A never-submitted hour adds nothing to the prefix and produces no row."""
        metrics = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (3, 1000)])

        self.assertEqual([m.hour for m in metrics], [1, 3])
        third = metrics[1]
        # baseline through hour 2 is 2700, achieved 1000
        self.assertAlmostEqual(third.shortfall, 1700)
        self.assertAlmostEqual(third.dynamic_target, 3050)
        self.assertAlmostEqual(third.variance_qty, -2050)

    def test_duplicate_hour_last_submission_wins(self):
        """Repeated entries for one hour collapse to the last one."""
        metrics = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (2, 900), (1, 1350)])

        self.assertEqual([m.hour for m in metrics], [1, 2])
        self.assertEqual(metrics[0].achieved_qty, 1350)
        self.assertAlmostEqual(metrics[1].shortfall, 0)

    def test_entry_order_does_not_matter(self):
        """Entries are processed in ascending hour order regardless of input order."""
        ordered = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (2, 1100), (3, 1200)])
        shuffled = recompute_hourly_metrics(SCENARIO_HEADER, [(3, 1200), (1, 1000), (2, 1100)])
        self.assertEqual(ordered, shuffled)

    def test_recomputation_is_deterministic(self):
        """Recomputing the same prefix twice gives identical results."""
        entries = [(1, 1001.5), (2, 987.25), (4, 1400.75), (5, 1299.1)]
        self.assertEqual(
            recompute_hourly_metrics(SCENARIO_HEADER, entries),
            recompute_hourly_metrics(SCENARIO_HEADER, list(entries)),
        )

    def test_net_variance_to_date(self):
        """Cumulative output against the flat baseline, negative when behind."""
        self.assertAlmostEqual(VarianceEngine.net_variance_to_date(1350, 2, 2000), -700)
        self.assertEqual(VarianceEngine.net_variance_to_date(1350, 0, 0), 0)


class EfficiencyAggregatorTest(SimpleTestCase):
    """Test hourly, achieve and total efficiency."""

    def test_efficiencies_for_two_hours(self):
        """1000 pieces/hour at SMV 1.2 with 30 operators is 66.67% every hour."""
        first, second = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (2, 1000)])

        self.assertAlmostEqual(first.hourly_efficiency, 200 / 3, places=6)
        self.assertAlmostEqual(first.achieve_efficiency, 200 / 3, places=6)
        self.assertAlmostEqual(first.total_efficiency, 200 / 3, places=6)
        self.assertAlmostEqual(second.achieve_efficiency, 200 / 3, places=6)
        self.assertAlmostEqual(second.total_efficiency, 200 / 3, places=6)

    def test_total_efficiency_is_running_average(self):
        """Total efficiency averages achieve efficiency over hour slots 1..h, gaps included."""
        first, third = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 1000), (3, 1000)])

        self.assertAlmostEqual(third.hourly_efficiency, 200 / 3, places=6)
        self.assertAlmostEqual(third.achieve_efficiency, 2000 / 45, places=6)
        # (1000/15 + 1000/30 + 2000/45) / 3
        self.assertAlmostEqual(third.total_efficiency, 1300 / 27, places=6)

    def test_no_capacity_gives_zero_efficiency(self):
        """Missing manpower or SMV yields 0 instead of a division error."""
        header = HeaderInputs.from_values(working_hour=8, today_target=800)
        for metrics in recompute_hourly_metrics(header, [(1, 120), (2, 80)]):
            self.assertEqual(metrics.hourly_efficiency, 0)
            self.assertEqual(metrics.achieve_efficiency, 0)
            self.assertEqual(metrics.total_efficiency, 0)

    def test_hour_zero_is_zero(self):
        """Cumulative efficiency before any hour elapsed is 0, not NaN."""
        self.assertEqual(EfficiencyAggregator.achieve_efficiency(SCENARIO_HEADER, 0, 0), 0)
        self.assertEqual(recompute_hourly_metrics(SCENARIO_HEADER, []), [])

    def test_efficiencies_never_negative(self):
        """Non-negative inputs never produce a negative efficiency."""
        metrics = recompute_hourly_metrics(SCENARIO_HEADER, [(1, 0), (2, 0.5), (4, 3000), (8, 0)])
        for m in metrics:
            self.assertGreaterEqual(m.hourly_efficiency, 0)
            self.assertGreaterEqual(m.achieve_efficiency, 0)
            self.assertGreaterEqual(m.total_efficiency, 0)
            for value in m.derived_fields().values():
                self.assertTrue(math.isfinite(value))


class SubmissionValidationTest(SimpleTestCase):
    """Test rejection of malformed hourly submissions."""

    def test_accepts_valid_submission(self):
        self.assertEqual(validate_submission(SCENARIO_HEADER, 8, "12.5"), (8, 12.5))
        self.assertEqual(validate_submission(SCENARIO_HEADER, 3.0, 0), (3, 0.0))

    def test_rejects_bad_quantities(self):
        """Negative, NaN, infinite and non-numeric quantities are rejected."""
        for quantity in (-1, float('nan'), float('inf'), "lots", None):
            with self.assertRaises(InvalidSubmission):
                validate_submission(SCENARIO_HEADER, 1, quantity)

    def test_rejects_hours_outside_working_day(self):
        """Hours must be integers within 1..working hours."""
        for hour in (0, -1, 9, 1.5, True, "2"):
            with self.assertRaises(InvalidSubmission):
                validate_submission(SCENARIO_HEADER, hour, 100)

    def test_rejects_oversized_numbers(self):
        """Integers too large for a float are rejected as invalid input, not overflow errors."""
        with self.assertRaises(InvalidSubmission) as ctx:
            validate_submission(SCENARIO_HEADER, 10 ** 400, 1)
        self.assertEqual(ctx.exception.errors, ["hour must be between 1 and 8"])

        with self.assertRaises(InvalidSubmission) as ctx:
            validate_submission(SCENARIO_HEADER, 1, 10 ** 400)
        self.assertEqual(ctx.exception.errors, ["achievedQty must be a number"])

        for hour in (1e300, float('inf'), float('nan')):
            with self.assertRaises(InvalidSubmission):
                validate_submission(SCENARIO_HEADER, hour, 1)

    def test_single_slot_when_working_hours_missing(self):
        """With no working hours set only hour 1 exists."""
        header = HeaderInputs.from_values(today_target=500)
        self.assertEqual(validate_submission(header, 1, 10), (1, 10.0))
        with self.assertRaises(InvalidSubmission) as ctx:
            validate_submission(header, 2, 10)
        self.assertIn("hour must be between 1 and 1", ctx.exception.errors)

    def test_collects_all_errors(self):
        with self.assertRaises(InvalidSubmission) as ctx:
            validate_submission(SCENARIO_HEADER, 0, -5)
        self.assertEqual(len(ctx.exception.errors), 2)


class ProductionAPITestBase(TestCase):
    """Base test class with common setup and helper methods."""

    def setUp(self):
        """Set up common test data"""
        self.client = Client()
        self.base_date = date(2025, 11, 15)

        self.line1 = ProductionUser.objects.create(name="Line 1")
        self.line2 = ProductionUser.objects.create(name="Line 2")
        self.inspector = QualityInspector.objects.create(name="QC 1")

        self.header = ProductionHeader.objects.create(
            production_user=self.line1,
            production_date=self.base_date,
            manpower_present=30,
            working_hour=8,
            plan_efficiency=90,
            smv=1.2,
            today_target=10800,
        )

    def submit(self, hour, achieved_qty, header=None, user=None):
        """Helper to post one hourly submission."""
        header = header or self.header
        user = user or self.line1
        return self.client.post(
            '/api/hourly-productions',
            {
                'header_id': header.id,
                'production_user_id': user.id,
                'hour': hour,
                'achieved_qty': achieved_qty,
            },
            content_type='application/json'
        )

    def stored(self, hour, header=None):
        return HourlyProduction.objects.get(header=header or self.header, hour=hour)


class ProductionHeaderAPITest(ProductionAPITestBase):
    """Test header upsert, lookup, update and delete."""

    def test_upsert_creates_then_updates_in_place(self):
        """Posting twice for the same user and date keeps a single header."""
        payload = {
            'production_user_id': self.line2.id,
            'production_date': '2025-11-15',
            'working_hour': 10,
            'today_target': 6000,
        }
        response = self.client.post('/api/production-headers', payload, content_type='application/json')
        self.assertEqual(response.status_code, 200)
        created = response.json()
        self.assertEqual(created['working_hour'], 10)
        self.assertIsNone(created['smv'])

        payload['today_target'] = 7000
        response = self.client.post('/api/production-headers', payload, content_type='application/json')
        updated = response.json()

        self.assertEqual(updated['id'], created['id'])
        self.assertEqual(updated['today_target'], 7000)
        self.assertEqual(ProductionHeader.objects.filter(production_user=self.line2).count(), 1)

    def test_upsert_rederives_stored_hours(self):
        """Changing capacity figures through an upsert rewrites cached hour targets."""
        self.submit(1, 1000)
        self.assertAlmostEqual(self.stored(1).dynamic_target, 1350)

        self.client.post(
            '/api/production-headers',
            {
                'production_user_id': self.line1.id,
                'production_date': '2025-11-15',
                'working_hour': 8,
                'today_target': 8000,
            },
            content_type='application/json'
        )
        # capacity fields cleared, so the base falls back to 8000 / 8
        self.assertAlmostEqual(self.stored(1).base_target_per_hour, 1000)
        self.assertAlmostEqual(self.stored(1).variance_qty, 0)

    def test_upsert_unknown_user(self):
        response = self.client.post(
            '/api/production-headers', {'production_user_id': 999}, content_type='application/json'
        )
        self.assertEqual(response.status_code, 404)

    def test_lookup_by_user_and_date(self):
        """Header lookup returns null data when nothing was saved for that day."""
        response = self.client.get(
            '/api/production-headers', {'production_user_id': self.line1.id, 'date': '2025-11-15'}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['id'], self.header.id)

        response = self.client.get(
            '/api/production-headers', {'production_user_id': self.line1.id, 'date': '2025-11-16'}
        )
        self.assertIsNone(response.json()['data'])

    def test_get_by_id(self):
        response = self.client.get(f'/api/production-headers/{self.header.id}')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['smv'], 1.2)

        response = self.client.get('/api/production-headers/999')
        self.assertEqual(response.status_code, 404)

    def test_patch_updates_and_rederives(self):
        """A partial update changes only sent fields and ripples into stored hours."""
        self.submit(1, 1000)
        self.submit(2, 1000)

        response = self.client.patch(
            f'/api/production-headers/{self.header.id}',
            {'manpower_present': 20},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['manpower_present'], 20)
        self.assertEqual(data['smv'], 1.2)

        # base = 20 * 60 * 0.9 / 1.2 = 900
        self.assertAlmostEqual(self.stored(1).dynamic_target, 900)
        self.assertAlmostEqual(self.stored(2).dynamic_target, 900)
        self.assertAlmostEqual(self.stored(2).variance_qty, 100)

    def test_patch_cannot_shrink_below_stored_hours(self):
        """Working hours may not drop below an hour that was already submitted."""
        for hour in range(1, 7):
            self.submit(hour, 1000)

        response = self.client.patch(
            f'/api/production-headers/{self.header.id}',
            {'working_hour': 4},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['errors'], ["workingHour 4 is below stored hour 6"])
        self.header.refresh_from_db()
        self.assertEqual(self.header.working_hour, 8)

        snapshot = self.client.get(f'/api/production-headers/{self.header.id}/snapshot').json()
        self.assertLessEqual(snapshot['current_hour'], snapshot['working_hours'])

        response = self.client.patch(
            f'/api/production-headers/{self.header.id}',
            {'working_hour': 6},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 200)

    def test_upsert_cannot_shrink_below_stored_hours(self):
        """An upsert that clears or lowers working hours under stored hours is rolled back."""
        self.submit(1, 1000)
        self.submit(3, 1000)

        response = self.client.post(
            '/api/production-headers',
            {'production_user_id': self.line1.id, 'production_date': '2025-11-15', 'today_target': 500},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 400)
        self.header.refresh_from_db()
        self.assertEqual(self.header.working_hour, 8)
        self.assertEqual(self.header.today_target, 10800)
        self.assertAlmostEqual(self.stored(3).base_target_per_hour, 1350)

    def test_patch_null_clears_field(self):
        response = self.client.patch(
            f'/api/production-headers/{self.header.id}',
            {'smv': None},
            content_type='application/json'
        )
        self.assertIsNone(response.json()['smv'])
        self.header.refresh_from_db()
        self.assertIsNone(self.header.smv)
        self.assertEqual(self.header.manpower_present, 30)

    def test_patch_date_clash(self):
        """Moving a header onto a date the user already has is a conflict."""
        ProductionHeader.objects.create(production_user=self.line1, production_date=date(2025, 11, 16))
        response = self.client.patch(
            f'/api/production-headers/{self.header.id}',
            {'production_date': '2025-11-16'},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 409)

    def test_delete_cascades_hours(self):
        self.submit(1, 1000)
        response = self.client.delete(f'/api/production-headers/{self.header.id}')

        self.assertEqual(response.status_code, 200)
        self.assertFalse(ProductionHeader.objects.filter(pk=self.header.id).exists())
        self.assertEqual(HourlyProduction.objects.count(), 0)


class HourlyProductionAPITest(ProductionAPITestBase):
    """Test hourly submissions and the derived-field cache."""

    def test_submission_scenario(self):
        """Stored records carry dynamic target, variance and efficiencies."""
        response = self.submit(1, 1000)
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertAlmostEqual(data['base_target_per_hour'], 1350)
        self.assertAlmostEqual(data['dynamic_target'], 1350)
        self.assertAlmostEqual(data['variance_qty'], -350)

        response = self.submit(2, 1000)
        body = response.json()
        self.assertAlmostEqual(body['data']['dynamic_target'], 1700)
        self.assertAlmostEqual(body['data']['variance_qty'], -700)
        self.assertAlmostEqual(body['data']['total_efficiency'], 200 / 3, places=4)
        self.assertEqual(body['recomputed_hours'], [2])

    def test_resubmitting_earlier_hour_ripples_forward(self):
        """Editing hour 1 after hour 2 is stored rewrites hour 2's target."""
        self.submit(1, 1000)
        self.submit(2, 1000)
        self.assertAlmostEqual(self.stored(2).dynamic_target, 1700)

        response = self.submit(1, 1350)
        self.assertEqual(response.json()['recomputed_hours'], [1, 2])

        second = self.stored(2)
        self.assertAlmostEqual(second.dynamic_target, 1350)
        self.assertAlmostEqual(second.variance_qty, -350)
        self.assertEqual(HourlyProduction.objects.filter(header=self.header).count(), 2)

    def test_cache_matches_fresh_recomputation(self):
        """Whatever the submission order, cached fields equal a from-scratch recompute."""
        for hour, qty in [(3, 1200), (1, 900), (5, 1500), (2, 1400), (1, 1000)]:
            self.submit(hour, qty)

        fresh = recompute_hourly_metrics(
            HeaderInputs.from_header(self.header),
            HourlyProduction.objects.filter(header=self.header).values_list('hour', 'achieved_qty')
        )
        for metrics in fresh:
            record = self.stored(metrics.hour)
            for field, value in metrics.derived_fields().items():
                self.assertAlmostEqual(getattr(record, field), value, places=9)

    def test_rejects_negative_quantity(self):
        response = self.submit(1, -5)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['errors'], ["achievedQty must be a non-negative number"])
        self.assertEqual(HourlyProduction.objects.count(), 0)

    def test_rejects_hour_outside_working_day(self):
        response = self.submit(9, 100)
        self.assertEqual(response.status_code, 400)
        self.assertIn("hour must be between 1 and 8", response.json()['errors'])

    def test_rejects_oversized_hour(self):
        response = self.submit(10 ** 400, 100)
        self.assertEqual(response.status_code, 400)
        self.assertIn("hour must be between 1 and 8", response.json()['errors'])
        self.assertEqual(HourlyProduction.objects.count(), 0)

    def test_rejects_foreign_user(self):
        """Only the header's production user may submit hours for it."""
        response = self.submit(1, 100, user=self.line2)
        self.assertEqual(response.status_code, 400)

    def test_unknown_header(self):
        response = self.client.post(
            '/api/hourly-productions',
            {'header_id': 999, 'production_user_id': self.line1.id, 'hour': 1, 'achieved_qty': 10},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 404)

    def test_list_ascending(self):
        self.submit(3, 300)
        self.submit(1, 100)
        response = self.client.get('/api/hourly-productions', {'header_id': self.header.id})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([r['hour'] for r in response.json()['data']], [1, 3])


class SnapshotAPITest(ProductionAPITestBase):
    """Test the live snapshot read path."""

    def test_empty_snapshot(self):
        """Before any hour is submitted every aggregate is 0."""
        response = self.client.get(f'/api/production-headers/{self.header.id}/snapshot')
        self.assertEqual(response.status_code, 200)
        data = response.json()

        self.assertEqual(data['current_hour'], 0)
        self.assertEqual(data['rows'], [])
        self.assertEqual(data['average_efficiency'], 0)
        self.assertEqual(data['current_hourly_efficiency'], 0)
        self.assertEqual(data['net_variance'], 0)
        self.assertEqual(data['working_hours'], 8)

    def test_snapshot_ignores_stale_cache(self):
        """The snapshot recomputes from quantities even if cached fields are wrong."""
        self.submit(1, 1000)
        self.submit(2, 1000)
        HourlyProduction.objects.filter(header=self.header).update(dynamic_target=0, variance_qty=0)

        data = self.client.get(f'/api/production-headers/{self.header.id}/snapshot').json()

        self.assertEqual(data['current_hour'], 2)
        self.assertEqual(data['total_achieved'], 2000)
        self.assertAlmostEqual(data['net_variance'], -700)
        self.assertEqual([row['hour'] for row in data['rows']], [1, 2])
        self.assertAlmostEqual(data['rows'][1]['dynamic_target'], 1700)
        self.assertEqual(
            [(p['hour'], round(p['value'])) for p in data['variance_series']],
            [(1, -350), (2, -700)]
        )
        self.assertAlmostEqual(data['average_efficiency'], 200 / 3, places=4)

    def test_snapshot_is_repeatable(self):
        self.submit(1, 1111)
        url = f'/api/production-headers/{self.header.id}/snapshot'
        self.assertEqual(self.client.get(url).json(), self.client.get(url).json())


class HourlyInspectionAPITest(ProductionAPITestBase):
    """Test end-line inspection entries and the quality summary."""

    def post_entries(self, entries, report_date='2025-11-15'):
        return self.client.post(
            '/api/hourly-inspections',
            {'inspector_id': self.inspector.id, 'report_date': report_date, 'entries': entries},
            content_type='application/json'
        )

    def seed_day(self):
        return self.post_entries([
            {
                'hour_label': '1st Hour', 'inspected_qty': 100, 'passed_qty': 90, 'defective_pcs': 10,
                'selected_defects': [
                    {'name': 'Open seam', 'quantity': 6},
                    {'name': 'Skip stitch', 'quantity': 4},
                    {'name': 'Broken stitch', 'quantity': 2},
                ],
            },
            {
                'hour_label': '2nd Hour', 'inspected_qty': 100, 'passed_qty': 95, 'defective_pcs': 5,
                'selected_defects': [
                    {'name': 'Open seam', 'quantity': 3},
                    {'name': 'Oil spot', 'quantity': 2},
                ],
            },
        ])

    def test_create_derives_hour_and_total_defects(self):
        response = self.seed_day()
        self.assertEqual(response.status_code, 201)
        data = response.json()

        self.assertEqual(data['count'], 2)
        first = data['data'][0]
        self.assertEqual(first['hour_index'], 1)
        self.assertEqual(first['total_defects'], 12)
        self.assertEqual(len(first['selected_defects']), 3)

    def test_duplicate_hour_rejected(self):
        """A second entry for the same inspector, date and hour is a conflict."""
        self.seed_day()
        response = self.post_entries([{'hour_label': '1st Hour', 'inspected_qty': 5}])

        self.assertEqual(response.status_code, 409)
        self.assertEqual(HourlyInspection.objects.count(), 2)

    def test_missing_hour_rejected(self):
        response = self.post_entries([{'hour_label': 'Morning', 'inspected_qty': 5}])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['errors'], ["hourLabel/hourIndex is required."])

    def test_passed_and_defective_bounded_by_inspected(self):
        response = self.post_entries([
            {'hour_label': '1st Hour', 'inspected_qty': 10, 'passed_qty': 12, 'defective_pcs': 11}
        ])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['errors'], [
            "passed_qty cannot exceed inspected_qty",
            "defective_pcs cannot exceed inspected_qty",
        ])
        self.assertEqual(HourlyInspection.objects.count(), 0)

    def test_list_filters(self):
        self.seed_day()
        self.post_entries([{'hour_label': '1st Hour', 'inspected_qty': 50}], report_date='2025-11-16')

        response = self.client.get('/api/hourly-inspections', {'inspector_id': self.inspector.id, 'date': '2025-11-15'})
        self.assertEqual(response.json()['count'], 2)

        response = self.client.get('/api/hourly-inspections', {'limit': 1})
        self.assertEqual(response.json()['count'], 1)

    def test_update_and_delete(self):
        entry_id = self.seed_day().json()['data'][1]['id']

        response = self.client.patch(
            f'/api/hourly-inspections/{entry_id}',
            {'hour_label': '2nd Hour', 'inspected_qty': 120, 'passed_qty': 110, 'defective_pcs': 10,
             'selected_defects': [{'name': 'Oil spot', 'quantity': 7}]},
            content_type='application/json'
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['total_defects'], 7)

        response = self.client.delete(f'/api/hourly-inspections/{entry_id}')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(HourlyInspection.objects.count(), 1)

    def test_quality_summary(self):
        """Ratios are against inspected pieces and the top three defects are ranked by quantity."""
        self.seed_day()
        response = self.client.get('/api/quality-summary', {'inspector_id': self.inspector.id, 'date': '2025-11-15'})
        self.assertEqual(response.status_code, 200)
        data = response.json()

        self.assertEqual(data['total_inspected'], 200)
        self.assertEqual(data['total_defects'], 17)
        self.assertAlmostEqual(data['rft_ratio'], 0.925)
        self.assertAlmostEqual(data['reject_ratio'], 0.075)
        self.assertAlmostEqual(data['dhu_ratio'], 0.085)
        self.assertEqual(
            [(d['name'], d['quantity'], d['percentage']) for d in data['top_defects']],
            [('Open seam', 9, 4.5), ('Skip stitch', 4, 2.0), ('Broken stitch', 2, 1.0)]
        )

    def test_quality_summary_without_inspections(self):
        response = self.client.get('/api/quality-summary', {'inspector_id': self.inspector.id, 'date': '2025-11-20'})
        data = response.json()
        self.assertIsNone(data['rft_ratio'])
        self.assertEqual(data['top_defects'], [])


class EfficiencyTrendAPITest(ProductionAPITestBase):
    """Test the trailing per-day efficiency trend."""

    def test_trend_uses_last_hour_average(self):
        HourlyProductionService.submit_hour(self.header.id, self.line1.id, 1, 1000)
        HourlyProductionService.submit_hour(self.header.id, self.line1.id, 3, 1000)

        next_day = ProductionHeader.objects.create(
            production_user=self.line1, production_date=date(2025, 11, 16),
            manpower_present=30, working_hour=8, plan_efficiency=90, smv=1.2
        )
        HourlyProductionService.submit_hour(next_day.id, self.line1.id, 1, 900)

        # empty day and out-of-window day are left out
        ProductionHeader.objects.create(production_user=self.line1, production_date=date(2025, 11, 17))
        old = ProductionHeader.objects.create(
            production_user=self.line1, production_date=date(2025, 9, 1),
            manpower_present=30, working_hour=8, smv=1.2
        )
        HourlyProductionService.submit_hour(old.id, self.line1.id, 1, 500)

        response = self.client.get(
            '/api/efficiency-trend', {'production_user_id': self.line1.id, 'end_date': '2025-11-20'}
        )
        self.assertEqual(response.status_code, 200)
        data = response.json()

        self.assertEqual(data['start_date'], '2025-10-22')
        self.assertEqual([p['production_date'] for p in data['points']], ['2025-11-15', '2025-11-16'])
        self.assertEqual(data['points'][0]['last_hour'], 3)
        self.assertAlmostEqual(data['points'][0]['average_efficiency'], 1300 / 27, places=4)
        self.assertAlmostEqual(data['points'][1]['average_efficiency'], 60.0, places=4)

    def test_trend_window_length(self):
        HourlyProductionService.submit_hour(self.header.id, self.line1.id, 1, 1000)

        response = self.client.get(
            '/api/efficiency-trend',
            {'production_user_id': self.line1.id, 'end_date': '2025-11-20', 'days': 6}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['start_date'], '2025-11-15')
        self.assertEqual(len(response.json()['points']), 1)

        response = self.client.get(
            '/api/efficiency-trend',
            {'production_user_id': self.line1.id, 'end_date': '2025-11-20', 'days': 5}
        )
        self.assertEqual(response.json()['points'], [])

    def test_trend_rejects_bad_window(self):
        for days in (0, -3, 10 ** 9):
            response = self.client.get(
                '/api/efficiency-trend', {'production_user_id': self.line1.id, 'days': days}
            )
            self.assertEqual(response.status_code, 400)


class ManagementCommandTest(TestCase):
    """Test seed loading and cache rebuilding commands."""

    def test_load_seed_data_derives_hours(self):
        call_command('load_seed_data', dir=str(settings.BASE_DIR / 'seed_data'), stdout=StringIO())

        header = ProductionHeader.objects.get(pk=1)
        second = HourlyProduction.objects.get(header=header, hour=2)
        self.assertAlmostEqual(second.base_target_per_hour, 1350)
        self.assertAlmostEqual(second.dynamic_target, 1700)

        # day-target split line with a gap at hour 2
        third = HourlyProduction.objects.get(header_id=2, hour=3)
        self.assertAlmostEqual(third.base_target_per_hour, 600)
        self.assertAlmostEqual(third.dynamic_target, 1250)

    def test_recompute_rebuilds_stale_cache(self):
        line = ProductionUser.objects.create(name="Line 9")
        header = ProductionHeader.objects.create(
            production_user=line, production_date=date(2025, 11, 15),
            manpower_present=30, working_hour=8, plan_efficiency=90, smv=1.2
        )
        HourlyProductionService.submit_hour(header.id, line.id, 1, 1000)
        HourlyProductionService.submit_hour(header.id, line.id, 2, 1000)
        HourlyProduction.objects.update(dynamic_target=0, variance_qty=0)

        out = StringIO()
        call_command('recompute_hourly_metrics', header=header.id, stdout=out)

        self.assertIn("Recomputed 2 hourly records", out.getvalue())
        self.assertAlmostEqual(HourlyProduction.objects.get(hour=2).dynamic_target, 1700)

    def test_recompute_unknown_header(self):
        with self.assertRaises(CommandError):
            call_command('recompute_hourly_metrics', header=999, stdout=StringIO())
