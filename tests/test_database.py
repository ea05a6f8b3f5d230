"""Storage engine: write transactions, range queries and the event log."""

import pytest
from sqlalchemy.exc import OperationalError

from weatherstation import aggregates
from weatherstation.aggregates import fold_samples
from weatherstation.config import StoreSettings
from weatherstation.database import WeatherStationDatabase
from weatherstation.exceptions import StorageError, InvalidInput, NotFound
from weatherstation.models import RawSample, HourlyAggregate, DailyAggregate, LogEntry, Severity
from tests.conftest import BASE_TS, HOUR_START, DAY_START

WEEK = 604800
MONTH = 2678400


def aggregate_row(store, model, key):
    with store.get_session() as session:
        row = session.get(model, key)
        return row.to_dict() if row else None


class TestSaveWeatherData:

    def test_round_trip(self, store):
        store.save_weather_data(1000, 20.0, 50.0)
        result = store.get_weather_data(1000, 1001, 'raw')
        assert result.error is None
        assert result.data['data'] == [{'timestamp': 1000, 'temperature': 20.0, 'humidity': 50.0}]

    def test_updates_hour_and_day_buckets(self, store):
        for offset, temperature in enumerate([10.0, 30.0, 20.0]):
            store.save_weather_data(BASE_TS + offset, temperature, 50.0 + offset)

        hour = aggregate_row(store, HourlyAggregate, HOUR_START)
        assert hour['min_temperature'] == 10.0
        assert hour['max_temperature'] == 30.0
        assert hour['temperature'] == pytest.approx(20.0)
        assert hour['number_values'] == 3
        assert hour['min_humidity'] == 50.0
        assert hour['max_humidity'] == 52.0

        day = aggregate_row(store, DailyAggregate, DAY_START)
        assert day['number_values'] == 3
        assert day['temperature'] == pytest.approx(20.0)

    def test_samples_in_other_hours_get_their_own_bucket(self, store):
        store.save_weather_data(HOUR_START - 1, 5.0, 30.0)
        store.save_weather_data(HOUR_START, 15.0, 40.0)

        assert aggregate_row(store, HourlyAggregate, HOUR_START - 3600)['number_values'] == 1
        assert aggregate_row(store, HourlyAggregate, HOUR_START)['number_values'] == 1
        assert aggregate_row(store, DailyAggregate, DAY_START)['number_values'] == 2

    def test_numeric_strings_are_parsed(self, store):
        assert store.save_weather_data('1000', '20.5', '50') == 1000
        assert store.get_weather_data(1000, 1001, 'raw').data['data'][0]['temperature'] == 20.5

    def test_missing_timestamp_defaults_to_now(self, store, monkeypatch):
        monkeypatch.setattr('weatherstation.validation.time.time', lambda: BASE_TS + 0.2)
        assert store.save_weather_data(None, 20.0, 50.0) == BASE_TS

    def test_invalid_input_writes_nothing(self, store):
        completions = []
        with pytest.raises(InvalidInput):
            store.save_weather_data(1000, 'hot', 50.0, on_complete=completions.append)
        assert isinstance(completions[0], InvalidInput)
        assert store.count_samples() == 0

    def test_out_of_range_timestamp_writes_nothing(self, store):
        completions = []
        with pytest.raises(InvalidInput):
            store.save_weather_data(10 ** 12, 20.0, 50.0, on_complete=completions.append)
        assert len(completions) == 1
        assert isinstance(completions[0], InvalidInput)
        assert store.count_samples() == 0
        with store.get_session() as session:
            assert session.query(HourlyAggregate).count() == 0

    def test_duplicate_timestamp_is_a_storage_error(self, store):
        store.save_weather_data(1000, 20.0, 50.0)
        with pytest.raises(StorageError):
            store.save_weather_data(1000, 25.0, 55.0)

        # The failed attempt must not have touched the aggregates
        hour = aggregate_row(store, HourlyAggregate, 0)
        assert hour['number_values'] == 1
        assert hour['temperature'] == 20.0
        assert store.get_logs(max_severity=Severity.ERROR)

    def test_on_complete_receives_none_on_success(self, store):
        completions = []
        store.save_weather_data(1000, 20.0, 50.0, on_complete=completions.append)
        assert completions == [None]

    def test_failed_day_update_rolls_back_everything(self, store, monkeypatch):
        store.save_weather_data(BASE_TS - 5, 15.0, 45.0)
        original_add_sample = aggregates.add_sample

        def failing_add_sample(session, model, *args):
            if model is DailyAggregate:
                raise OperationalError("UPDATE data_per_day", {}, Exception("disk I/O error"))
            return original_add_sample(session, model, *args)

        monkeypatch.setattr(aggregates, 'add_sample', failing_add_sample)
        completions = []
        with pytest.raises(StorageError):
            store.save_weather_data(BASE_TS, 30.0, 60.0, on_complete=completions.append)

        assert isinstance(completions[0], StorageError)
        assert store.get_weather_data(BASE_TS, BASE_TS + 1, 'raw').data['data'] == []
        hour = aggregate_row(store, HourlyAggregate, HOUR_START)
        assert hour['number_values'] == 1
        assert hour['temperature'] == 15.0
        # The failure is recorded even though the write was rolled back
        messages = [entry['message'] for entry in store.get_logs()]
        assert any('disk I/O error' in message for message in messages)


class TestDeleteWeatherData:

    def test_delete_then_reconstruct_equals_fresh_insert(self, store, tmp_path):
        samples = [(BASE_TS + i * 20, 10.0 + i * 1.5, 40.0 + (i % 4)) for i in range(8)]
        for sample in samples:
            store.save_weather_data(*sample)

        assert store.delete_weather_data(samples[3][0]) is True

        fresh = WeatherStationDatabase(StoreSettings(database_url=f"sqlite:///{tmp_path / 'fresh.db'}"))
        fresh.initialize()
        try:
            for sample in samples[:3] + samples[4:]:
                fresh.save_weather_data(*sample)

            for model, key in ((HourlyAggregate, HOUR_START), (DailyAggregate, DAY_START)):
                rebuilt = aggregate_row(store, model, key)
                expected = aggregate_row(fresh, model, key)
                assert rebuilt['number_values'] == expected['number_values'] == 7
                for column in ('temperature', 'humidity'):
                    assert rebuilt[column] == pytest.approx(expected[column])
                for column in ('min_temperature', 'max_temperature', 'min_humidity', 'max_humidity'):
                    assert rebuilt[column] == expected[column]
        finally:
            fresh.close()

    def test_deleting_an_extreme_recomputes_min_and_max(self, store):
        for offset, temperature in enumerate([10.0, 30.0, 20.0]):
            store.save_weather_data(BASE_TS + offset, temperature, 50.0)

        store.delete_weather_data(BASE_TS + 1)

        hour = aggregate_row(store, HourlyAggregate, HOUR_START)
        assert hour['max_temperature'] == 20.0
        assert hour['temperature'] == pytest.approx(15.0)
        assert hour['number_values'] == 2

    def test_empty_bucket_vanishes(self, store):
        store.save_weather_data(BASE_TS, 20.0, 50.0)
        store.delete_weather_data(BASE_TS)

        assert aggregate_row(store, HourlyAggregate, HOUR_START) is None
        assert aggregate_row(store, DailyAggregate, DAY_START) is None
        assert store.count_samples() == 0

    def test_emptied_hour_vanishes_but_day_remains(self, store):
        store.save_weather_data(BASE_TS, 20.0, 50.0)
        store.save_weather_data(DAY_START, 10.0, 40.0)
        store.delete_weather_data(BASE_TS)

        assert aggregate_row(store, HourlyAggregate, HOUR_START) is None
        day = aggregate_row(store, DailyAggregate, DAY_START)
        assert day['number_values'] == 1
        assert day['temperature'] == 10.0

    def test_deleting_missing_sample_is_a_no_op(self, store):
        store.save_weather_data(BASE_TS, 20.0, 50.0)
        completions = []
        assert store.delete_weather_data(BASE_TS + 1, on_complete=completions.append) is False
        assert completions == [None]
        assert aggregate_row(store, HourlyAggregate, HOUR_START)['number_values'] == 1

    def test_strict_delete_of_missing_sample(self, store):
        with pytest.raises(NotFound):
            store.delete_weather_data(BASE_TS, strict=True)

    def test_fix_up_replaces_a_bad_entry(self, store):
        store.save_weather_data(BASE_TS, 20.0, 50.0)
        store.save_weather_data(BASE_TS + 1, 99.0, 50.0)

        store.delete_weather_data(BASE_TS + 1)
        store.save_weather_data(BASE_TS + 1, 22.0, 52.0)

        hour = aggregate_row(store, HourlyAggregate, HOUR_START)
        assert hour['max_temperature'] == 22.0
        assert hour['temperature'] == pytest.approx(21.0)
        assert hour['number_values'] == 2

    def test_invalid_timestamp(self, store):
        with pytest.raises(InvalidInput):
            store.delete_weather_data('yesterday')

    def test_out_of_range_timestamp(self, store):
        store.save_weather_data(BASE_TS, 20.0, 50.0)
        completions = []
        with pytest.raises(InvalidInput):
            store.delete_weather_data(10 ** 12, on_complete=completions.append)
        assert isinstance(completions[0], InvalidInput)
        assert store.count_samples() == 1


class TestGetWeatherData:

    @pytest.fixture
    def filled_store(self, store):
        for i in range(6):
            store.save_weather_data(DAY_START + i * 1800, 10.0 + i, 50.0)
        return store

    def test_rows_are_ordered_and_end_is_excluded(self, filled_store):
        result = filled_store.get_weather_data(DAY_START, DAY_START + 3 * 1800, 'raw')
        timestamps = [row['timestamp'] for row in result.data['data']]
        assert timestamps == [DAY_START, DAY_START + 1800, DAY_START + 3600]

    def test_raw_rows_carry_no_aggregate_fields(self, filled_store):
        row = filled_store.get_weather_data(DAY_START, DAY_START + 1, 'raw').data['data'][0]
        assert set(row) == {'timestamp', 'temperature', 'humidity'}

    def test_hour_rows(self, filled_store):
        result = filled_store.get_weather_data(DAY_START, DAY_START + 86400, 'hour')
        assert result.data['granularity'] == 'hour'
        assert [row['number_values'] for row in result.data['data']] == [2, 2, 2]
        first = result.data['data'][0]
        assert first['timestamp'] == DAY_START
        assert first['temperature'] == pytest.approx(10.5)
        assert (first['min_temperature'], first['max_temperature']) == (10.0, 11.0)

    def test_day_rows(self, filled_store):
        result = filled_store.get_weather_data(DAY_START, DAY_START + 86400, 'day')
        assert len(result.data['data']) == 1
        assert result.data['data'][0]['number_values'] == 6

    def test_result_echoes_the_timeframe(self, filled_store):
        result = filled_store.get_weather_data('0', str(DAY_START), None)
        assert result.data['timestamp_start'] == 0
        assert result.data['timestamp_end'] == DAY_START
        assert result.data['data'] == []

    @pytest.mark.parametrize("span, expected", [
        (0, 'raw'),
        (WEEK, 'raw'),
        (WEEK + 1, 'hour'),
        (MONTH, 'hour'),
        (MONTH + 1, 'day'),
    ])
    def test_automatic_granularity(self, store, span, expected):
        result = store.get_weather_data(DAY_START, DAY_START + span)
        assert result.error is None
        assert result.data['granularity'] == expected

    def test_unknown_granularity_is_automatic(self, store):
        assert store.get_weather_data(0, WEEK + 1, 'fortnight').data['granularity'] == 'hour'

    def test_explicit_granularity_wins(self, store):
        assert store.get_weather_data(0, 10 * MONTH, 'raw').data['granularity'] == 'raw'
        assert store.get_weather_data(0, 10, 'day').data['granularity'] == 'day'

    def test_thresholds_are_configurable(self, database_url):
        settings = StoreSettings(database_url=database_url, hour_granularity_threshold=3600,
                                 day_granularity_threshold=86400)
        with WeatherStationDatabase(settings) as custom:
            assert custom.get_weather_data(0, 3600).data['granularity'] == 'raw'
            assert custom.get_weather_data(0, 3601).data['granularity'] == 'hour'
            assert custom.get_weather_data(0, 86401).data['granularity'] == 'day'

    def test_malformed_range_returns_an_error(self, store):
        result = store.get_weather_data(100, 50)
        assert isinstance(result.error, InvalidInput)
        assert result.data is None

    @pytest.mark.parametrize("start, end", [(0, 2 ** 70), (-(2 ** 70), 0), (-1, 10)])
    def test_out_of_range_bounds_return_an_error(self, store, start, end):
        result = store.get_weather_data(start, end, 'raw')
        assert isinstance(result.error, InvalidInput)
        assert result.data is None

    def test_storage_failure_returns_an_error(self, store, monkeypatch):
        def broken_session():
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(store, 'get_session', broken_session)
        result = store.get_weather_data(0, 10, 'raw')
        assert isinstance(result.error, StorageError)
        assert result.data is None

    def test_queries_do_not_write(self, filled_store):
        before = filled_store.count_samples()
        filled_store.get_weather_data(0, 10 * MONTH)
        assert filled_store.count_samples() == before
        assert filled_store.get_logs() == []


class TestEventLog:

    def test_log_appends_entries(self, store):
        assert store.log(Severity.INFO, 'Weather station started.') is None
        store.log(Severity.WARNING, 'Probe failed')

        entries = store.get_logs()
        assert [entry['message'] for entry in entries] == ['Probe failed', 'Weather station started.']
        assert entries[0]['severity'] == 4
        assert entries[0]['severity_name'] == 'WARNING'
        assert entries[0]['id'] > entries[1]['id']

    def test_non_string_messages_are_stored_as_repr(self, store):
        store.log(Severity.DEBUG, {'probe': 'probe1'})
        assert store.get_logs()[0]['message'] == "{'probe': 'probe1'}"

    def test_severity_filter(self, store):
        store.log(Severity.DEBUG, 'noise')
        store.log(Severity.ERROR, 'boom')
        assert [e['message'] for e in store.get_logs(max_severity=Severity.WARNING)] == ['boom']

    def test_severities_are_ordered(self):
        assert Severity.EMERGENCY < Severity.ERROR < Severity.DEBUG
        assert [s.value for s in Severity] == list(range(8))

    def test_failure_is_returned_not_raised(self, caplog):
        uninitialized = WeatherStationDatabase()
        error = uninitialized.log(Severity.ERROR, 'lost message')
        assert isinstance(error, RuntimeError)
        assert 'lost message' in caplog.text

    def test_failure_goes_to_the_callback_when_given(self):
        errors = []
        error = WeatherStationDatabase().log(Severity.ERROR, 'lost message', on_error=errors.append)
        assert errors == [error]


class TestLifecycle:

    def test_session_requires_initialize(self):
        with pytest.raises(RuntimeError):
            WeatherStationDatabase().get_session()

    def test_context_manager_initializes(self, database_url):
        with WeatherStationDatabase(StoreSettings(database_url=database_url)) as db:
            db.save_weather_data(1000, 20.0, 50.0)
            assert db.count_samples() == 1

    def test_data_survives_reopening(self, store, database_url):
        store.save_weather_data(1000, 20.0, 50.0)
        store.close()
        with WeatherStationDatabase(StoreSettings(database_url=database_url)) as reopened:
            assert reopened.get_latest_sample() == {'timestamp': 1000, 'temperature': 20.0, 'humidity': 50.0}

    def test_latest_sample(self, store):
        assert store.get_latest_sample() is None
        store.save_weather_data(2000, 21.0, 51.0)
        store.save_weather_data(1000, 20.0, 50.0)
        assert store.get_latest_sample()['timestamp'] == 2000

    def test_import_raw_samples_builds_aggregates(self, store):
        count = store.import_raw_samples([(BASE_TS, 10.0, 40.0), (BASE_TS + 5, 20.0, 60.0)])
        assert count == 2
        hour = aggregate_row(store, HourlyAggregate, HOUR_START)
        expected = fold_samples([(10.0, 40.0), (20.0, 60.0)])
        assert hour['temperature'] == pytest.approx(expected.temperature)
        assert hour['number_values'] == 2

    def test_failed_import_writes_nothing(self, store):
        with pytest.raises(StorageError):
            store.import_raw_samples([(BASE_TS, 10.0, 40.0), (BASE_TS, 20.0, 60.0)])
        assert store.count_samples() == 0
        with store.get_session() as session:
            assert session.query(HourlyAggregate).count() == 0
            assert session.query(LogEntry).count() == 1
            assert session.query(RawSample).count() == 0
