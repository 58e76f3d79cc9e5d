"""Tests for the conflict resolution engine."""
import pytest
from datetime import datetime, timedelta

from conflict_resolver import (
    ConflictData, ConflictResolver, ConflictRule, Resolution, ResolutionSource, RuleKind,
    format_time_diff, values_equal
)


NOW = datetime(2024, 5, 1, 12, 0, 0)


def price_conflict(remote, local):
    return ConflictData(field='price', remote_value=remote, local_value=local,
                        remote_updated_at=NOW, local_updated_at=NOW - timedelta(hours=1))


class TestValueEquality:
    """Test deep equality used by detection."""

    def test_nested_structures(self):
        assert values_equal({'a': [1, {'b': 2}]}, {'a': [1, {'b': 2}]})
        assert not values_equal({'a': [1, 2]}, {'a': [2, 1]})
        assert not values_equal({'a': 1}, {'a': 1, 'b': None})
        assert not values_equal([1], {'0': 1})

    def test_scalars(self):
        assert values_equal(None, None)
        assert values_equal(4.5, 4.5)
        assert not values_equal('4.5', 4.5)

    def test_format_time_diff(self):
        assert format_time_diff(30) == '30 seconds'
        assert format_time_diff(-120) == '2 minutes'
        assert format_time_diff(3600) == '1 hour'
        assert format_time_diff(3 * 86400) == '3 days'


class TestDetectConflicts:
    """Test field-level conflict detection."""

    def test_reports_only_differing_fields(self, resolver):
        remote = {'name': 'Espresso', 'price': 3.5, 'sku': 'ESP-1', 'description': None}
        local = {'name': 'Espresso', 'price': 3.0, 'sku': 'ESP-1', 'description': None}

        conflicts = resolver.detect_conflicts(remote, local, NOW, NOW)

        assert [c.field for c in conflicts] == ['price']
        assert conflicts[0].remote_value == 3.5
        assert conflicts[0].local_value == 3.0

    def test_union_of_keys_and_timestamps_parsed(self, resolver):
        conflicts = resolver.detect_conflicts(
            {'name': 'Latte'}, {'category_id': 'drinks'}, '2024-05-01T12:00:00Z', None)

        assert [c.field for c in conflicts] == ['category_id', 'name']
        assert conflicts[0].remote_updated_at == NOW
        assert conflicts[0].local_updated_at is None


class TestPriceThreshold:
    """Test the built-in price strategy."""

    def test_small_difference_follows_pos(self, resolver):
        resolution = resolver.resolve(price_conflict(29.99, 25.00))

        assert resolution.source == ResolutionSource.REMOTE
        assert resolution.resolved_value == 29.99
        assert resolution.reason == "POS source of truth"
        assert not resolution.needs_review
        assert resolver.get_manual_review_queue() == []

    def test_large_difference_requires_review(self, resolver):
        resolution = resolver.resolve(price_conflict(50.00, 25.00))

        assert resolution.source == ResolutionSource.MANUAL
        assert resolution.resolved_value == 50.00
        assert "exceeds threshold" in resolution.reason
        assert len(resolver.get_manual_review_queue()) == 1

    def test_threshold_is_configurable(self):
        resolver = ConflictResolver(price_threshold=1.0)
        resolution = resolver.resolve(price_conflict(29.99, 25.00))
        assert resolution.source == ResolutionSource.MANUAL

    def test_missing_price_goes_to_review(self, resolver):
        resolution = resolver.resolve(price_conflict(12.0, None))
        assert resolution.source == ResolutionSource.MANUAL
        assert resolution.resolved_value == 12.0


class TestMostRecent:
    """Test timestamp-based resolution."""

    def make(self, remote_ts, local_ts):
        return ConflictData(field='name', remote_value='Remote', local_value='Local',
                            remote_updated_at=remote_ts, local_updated_at=local_ts)

    def test_newer_side_wins(self, resolver):
        remote_newer = resolver.resolve(self.make(NOW, NOW - timedelta(minutes=5)))
        local_newer = resolver.resolve(self.make(NOW - timedelta(days=2), NOW))

        assert remote_newer.resolved_value == 'Remote'
        assert remote_newer.reason == "POS value is newer by 5 minutes"
        assert local_newer.resolved_value == 'Local'
        assert local_newer.reason == "Local value is newer by 2 days"

    def test_equal_timestamps_default_to_pos(self, resolver):
        resolution = resolver.resolve(self.make(NOW, NOW))
        assert resolution.source == ResolutionSource.REMOTE
        assert resolution.reason == "Timestamps are equal, defaulting to POS value"

    def test_missing_timestamps(self, resolver):
        assert resolver.resolve(self.make(None, None)).source == ResolutionSource.REMOTE
        assert resolver.resolve(self.make(None, NOW)).source == ResolutionSource.LOCAL
        assert resolver.resolve(self.make(NOW, None)).source == ResolutionSource.REMOTE

    def test_resolution_is_deterministic(self, resolver):
        conflicts = [self.make(NOW, NOW - timedelta(seconds=1)), price_conflict(40.0, 10.0),
                     ConflictData('description', 'a', 'b', NOW, NOW)]

        first = [r.to_dict() for r in resolver.resolve_multiple(conflicts)]
        second = [r.to_dict() for r in ConflictResolver().resolve_multiple(conflicts)]

        assert first == second


class TestRulesAndPolicies:
    """Test per-field rules, policies and custom strategies."""

    def test_default_field_rules(self, resolver):
        description = resolver.resolve(ConflictData('description', 'pos', 'local', NOW, NOW - timedelta(days=1)))
        sku = resolver.resolve(ConflictData('sku', 'POS-1', 'LOC-1', NOW - timedelta(days=1), NOW))

        assert description.resolved_value == 'local'
        assert description.rule == RuleKind.LOCAL_WINS
        assert sku.resolved_value == 'POS-1'
        assert sku.rule == RuleKind.REMOTE_WINS

    def test_unconfigured_field_uses_most_recent(self, resolver):
        resolution = resolver.resolve(ConflictData('color', 'red', 'blue', NOW, NOW - timedelta(hours=2)))
        assert resolution.rule == RuleKind.MOST_RECENT
        assert resolution.resolved_value == 'red'

    @pytest.mark.parametrize('policy,expected', [
        ('remote_wins', 'pos'),
        ('local_wins', 'local'),
        ('most_recent', 'pos'),
    ])
    def test_mapping_policy_overrides_field_rules(self, resolver, policy, expected):
        conflict = ConflictData('description', 'pos', 'local', NOW, NOW - timedelta(hours=1))
        assert resolver.resolve(conflict, policy=policy).resolved_value == expected

    def test_manual_policy_queues_every_field(self, resolver):
        resolutions = resolver.resolve_multiple(
            [ConflictData('name', 'a', 'b'), ConflictData('sku', 'c', 'd')], policy='manual')
        assert all(r.needs_review for r in resolutions)
        assert len(resolver.get_manual_review_queue()) == 2

    def test_resolve_without_enqueue(self, resolver):
        resolutions = resolver.resolve_multiple(
            [ConflictData('name', 'a', 'b')], policy='manual', enqueue=False)
        assert resolutions[0].needs_review
        assert resolver.get_manual_review_queue() == []

    def test_custom_strategy(self, resolver):
        def longest_name(conflict, rule):
            value = max([conflict.remote_value, conflict.local_value], key=len)
            source = ResolutionSource.REMOTE if value == conflict.remote_value else ResolutionSource.LOCAL
            return Resolution(conflict.field, value, source, "Longest name wins", RuleKind.CUSTOM)

        resolver.register_strategy('longest', longest_name)
        resolver.set_rule('name', ConflictRule(RuleKind.CUSTOM, 'longest'))

        resolution = resolver.resolve(ConflictData('name', 'Tea', 'Green Tea', NOW, NOW))
        assert resolution.resolved_value == 'Green Tea'
        assert resolution.source == ResolutionSource.LOCAL

    def test_unknown_custom_strategy_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.set_rule('name', ConflictRule(RuleKind.CUSTOM, 'missing'))


class TestApplyAndQueue:
    """Test merging, stats and the bounded review queue."""

    def test_apply_resolutions_does_not_mutate_input(self, resolver):
        base = {'name': 'Old', 'tags': ['a'], 'price': 5.0}
        resolutions = [Resolution('name', 'New', ResolutionSource.REMOTE, 'r', RuleKind.REMOTE_WINS)]

        merged = resolver.apply_resolutions(base, resolutions)

        assert merged == {'name': 'New', 'tags': ['a'], 'price': 5.0}
        assert base['name'] == 'Old'
        merged['tags'].append('b')
        assert base['tags'] == ['a']

    def test_stats(self, resolver):
        resolutions = resolver.resolve_multiple([
            price_conflict(50.0, 10.0),
            price_conflict(11.0, 10.0),
            ConflictData('description', 'a', 'b'),
        ])
        assert resolver.get_stats(resolutions) == {
            'total': 3, 'remote_wins': 1, 'local_wins': 1, 'manual_review': 1
        }

    def test_queue_is_bounded_and_drops_oldest(self):
        resolver = ConflictResolver(review_queue_limit=2)
        for remote in (100.0, 200.0, 300.0):
            resolver.resolve(price_conflict(remote, 1.0))

        queue = resolver.get_manual_review_queue()
        assert [c.remote_value for c in queue] == [200.0, 300.0]

    def test_clear_queue(self, resolver):
        resolver.resolve(price_conflict(100.0, 1.0))
        assert resolver.clear_manual_review_queue() == 1
        assert resolver.get_manual_review_queue() == []
