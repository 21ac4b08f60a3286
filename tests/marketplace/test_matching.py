"""Tests for job-to-operator matching."""

from datetime import date, datetime, timezone

import pytest

from agrimarket.marketplace.matching import (
    DAY_UNAVAILABLE,
    GEO_CHECK_SKIPPED,
    OUTSIDE_SERVICE_RADIUS,
    OUTSIDE_WORKING_HOURS,
    SERVICE_TYPE_MISMATCH,
    evaluate_job,
    extract_coordinates,
    filter_jobs,
    haversine_km,
    offers_service_type,
)
from agrimarket.marketplace.models import Job, ServiceConfiguration

# Pescia, Tuscany; Lucca is ~17 km west, Florence ~55 km east
PESCIA = {"lat": 43.9036, "lng": 10.6894}
LUCCA = (43.8430, 10.5079)
FLORENCE = (43.7696, 11.2558)


def _job(**overrides):
    fields = {
        "id": "job-1",
        "buyer_org_id": "org-buyer",
        "service_type": "spray",
        "field_name": "Vigna Nord",
        "area_ha": 4.5,
        "location": PESCIA,
    }
    fields.update(overrides)
    return Job(**fields)


def _config(**overrides):
    fields = {"org_id": "org-operator-a", "enable_job_filters": True}
    fields.update(overrides)
    return ServiceConfiguration(**fields)


class TestFiltersDisabled:
    """Operators without filters see everything."""

    def test_no_configuration_is_eligible(self):
        result = evaluate_job(_job(), None)
        assert result.eligible
        assert result.reasons == ()

    def test_disabled_filters_ignore_constraints(self):
        config = _config(enable_job_filters=False, offered_service_types=["mapping"])
        assert evaluate_job(_job(), config).eligible
        assert offers_service_type(_job(), config)

    def test_enabled_without_constraints_is_eligible(self):
        result = evaluate_job(_job(), _config())
        assert result.eligible
        assert result.skipped == ()


class TestServiceType:
    def test_matching_service_type(self):
        assert evaluate_job(_job(), _config(offered_service_types=["spray", "spread"])).eligible

    def test_mismatched_service_type(self):
        result = evaluate_job(_job(), _config(offered_service_types=["mapping"]))
        assert not result.eligible
        assert result.reasons == (SERVICE_TYPE_MISMATCH,)

    def test_empty_set_matches_nothing(self):
        """An explicit empty set is a restriction, unlike None."""
        result = evaluate_job(_job(), _config(offered_service_types=[]))
        assert result.reasons == (SERVICE_TYPE_MISMATCH,)
        assert not offers_service_type(_job(), _config(offered_service_types=[]))


class TestAvailableDays:
    def test_job_without_dates_passes(self):
        assert evaluate_job(_job(), _config(available_days=["MON"])).eligible

    def test_single_day_on_available_weekday(self):
        # 2026-05-04 is a Monday
        job = _job(target_date_start=date(2026, 5, 4))
        assert evaluate_job(job, _config(available_days=["MON"])).eligible

    def test_single_day_on_unavailable_weekday(self):
        job = _job(target_date_start=date(2026, 5, 9))  # Saturday
        result = evaluate_job(job, _config(available_days=["MON", "TUE", "WED", "THU", "FRI"]))
        assert result.reasons == (DAY_UNAVAILABLE,)

    def test_range_overlapping_available_day(self):
        job = _job(target_date_start=date(2026, 5, 9), target_date_end=date(2026, 5, 11))
        assert evaluate_job(job, _config(available_days=["MON"])).eligible

    def test_week_long_range_covers_every_day(self):
        job = _job(target_date_start=date(2026, 5, 4), target_date_end=date(2026, 6, 30))
        assert evaluate_job(job, _config(available_days=["SUN"])).eligible

    def test_only_end_date_given(self):
        job = _job(target_date_end=date(2026, 5, 9))  # Saturday
        assert not evaluate_job(job, _config(available_days=["MON"])).eligible

    def test_empty_days_matches_nothing(self):
        job = _job(target_date_start=date(2026, 5, 4))
        assert evaluate_job(job, _config(available_days=[])).reasons == (DAY_UNAVAILABLE,)


class TestWorkingHours:
    def _window(self, start_hour, end_hour):
        return _job(
            requested_window_start=datetime(2026, 5, 4, start_hour, 0, tzinfo=timezone.utc),
            requested_window_end=datetime(2026, 5, 4, end_hour, 0, tzinfo=timezone.utc),
        )

    def test_window_inside_hours(self):
        config = _config(working_hours_start=6, working_hours_end=18)
        assert evaluate_job(self._window(7, 12), config).eligible

    def test_window_starting_too_early(self):
        config = _config(working_hours_start=8, working_hours_end=18)
        result = evaluate_job(self._window(6, 12), config)
        assert result.reasons == (OUTSIDE_WORKING_HOURS,)

    def test_window_ending_too_late(self):
        config = _config(working_hours_start=6, working_hours_end=16)
        assert not evaluate_job(self._window(8, 17), config).eligible

    def test_window_ending_exactly_at_close(self):
        config = _config(working_hours_start=6, working_hours_end=16)
        assert evaluate_job(self._window(8, 16), config).eligible

    def test_no_window_passes(self):
        config = _config(working_hours_start=8, working_hours_end=9)
        assert evaluate_job(_job(), config).eligible

    def test_overnight_window_outside_day_hours(self):
        job = _job(
            requested_window_start=datetime(2026, 5, 4, 20, 0, tzinfo=timezone.utc),
            requested_window_end=datetime(2026, 5, 5, 2, 0, tzinfo=timezone.utc),
        )
        result = evaluate_job(job, _config(working_hours_start=8, working_hours_end=18))

        assert not result.eligible
        assert result.reasons == (OUTSIDE_WORKING_HOURS,)

    def test_multi_day_window_with_daytime_clock_times(self):
        # 09:00 on Monday to 10:00 on Tuesday still spans the night
        job = _job(
            requested_window_start=datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc),
            requested_window_end=datetime(2026, 5, 5, 10, 0, tzinfo=timezone.utc),
        )
        assert not evaluate_job(job, _config(working_hours_start=8, working_hours_end=18)).eligible

    def test_multi_day_window_with_round_the_clock_hours(self):
        job = _job(
            requested_window_start=datetime(2026, 5, 4, 20, 0, tzinfo=timezone.utc),
            requested_window_end=datetime(2026, 5, 6, 2, 0, tzinfo=timezone.utc),
        )
        assert evaluate_job(job, _config(working_hours_start=0, working_hours_end=24)).eligible


class TestServiceRadius:
    def test_haversine_known_distance(self):
        distance = haversine_km(PESCIA["lat"], PESCIA["lng"], FLORENCE[0], FLORENCE[1])
        assert distance == pytest.approx(47, abs=5)

    def test_haversine_same_point(self):
        assert haversine_km(1.0, 2.0, 1.0, 2.0) == 0

    def test_inside_radius(self):
        config = _config(base_location_lat=LUCCA[0], base_location_lng=LUCCA[1], service_radius_km=25)
        assert evaluate_job(_job(), config).eligible

    def test_outside_radius(self):
        config = _config(
            base_location_lat=FLORENCE[0], base_location_lng=FLORENCE[1], service_radius_km=20
        )
        result = evaluate_job(_job(), config)
        assert result.reasons == (OUTSIDE_SERVICE_RADIUS,)

    def test_missing_job_location_skips_check(self):
        config = _config(
            base_location_lat=FLORENCE[0], base_location_lng=FLORENCE[1], service_radius_km=20
        )
        result = evaluate_job(_job(location=None), config)
        assert result.eligible
        assert result.skipped == (GEO_CHECK_SKIPPED,)

    def test_missing_base_location_skips_check(self):
        result = evaluate_job(_job(), _config(service_radius_km=20))
        assert result.eligible
        assert result.skipped == (GEO_CHECK_SKIPPED,)

    def test_radius_without_limit_is_not_checked(self):
        config = _config(base_location_lat=FLORENCE[0], base_location_lng=FLORENCE[1])
        result = evaluate_job(_job(), config)
        assert result.eligible
        assert result.skipped == ()


class TestExtractCoordinates:
    def test_lat_lng_mapping(self):
        assert extract_coordinates({"lat": 1.5, "lng": 2.5}) == (1.5, 2.5)

    def test_latitude_longitude_mapping(self):
        assert extract_coordinates({"latitude": "1.5", "longitude": "2.5"}) == (1.5, 2.5)

    def test_center_wrapper(self):
        assert extract_coordinates({"center": [10.0, 20.0]}) == (10.0, 20.0)

    def test_polygon_centroid(self):
        polygon = {"polygon": [[0.0, 0.0], [0.0, 2.0], [2.0, 2.0], [2.0, 0.0]]}
        assert extract_coordinates(polygon) == (1.0, 1.0)

    @pytest.mark.parametrize(
        "location",
        [None, "Pescia", {"lat": 200, "lng": 0}, {"address": "Via Roma 1"}, [], [[0, 0], "x"]],
    )
    def test_unreadable_locations(self, location):
        assert extract_coordinates(location) is None


class TestCombinedReasons:
    def test_all_reasons_reported_in_order(self):
        job = _job(
            target_date_start=date(2026, 5, 9),
            requested_window_start=datetime(2026, 5, 9, 5, 0, tzinfo=timezone.utc),
        )
        config = _config(
            offered_service_types=["mapping"],
            available_days=["MON"],
            working_hours_start=8,
            working_hours_end=18,
            base_location_lat=FLORENCE[0],
            base_location_lng=FLORENCE[1],
            service_radius_km=10,
        )
        result = evaluate_job(job, config)

        assert result.reasons == (
            SERVICE_TYPE_MISMATCH,
            DAY_UNAVAILABLE,
            OUTSIDE_WORKING_HOURS,
            OUTSIDE_SERVICE_RADIUS,
        )
        assert result.to_dict()["reasons"] == list(result.reasons)

    def test_filter_jobs_keeps_eligible(self):
        spray = _job(id="job-spray")
        mapping = _job(id="job-map", service_type="mapping")
        matched = filter_jobs([spray, mapping], _config(offered_service_types=["mapping"]))

        assert [job.id for job, _ in matched] == ["job-map"]
