import importlib


def _t(**kw):
    models = importlib.import_module('core.models')
    base = dict(hash='h', size=1000, downloaded=100, state='downloading', download_speed=50)
    base.update(kw)
    return models.TorrentView(**base)


def _stall(**kw):
    rules = importlib.import_module('core.rules')
    return rules.StallRule(name='stall', **kw)


def _slow(**kw):
    rules = importlib.import_module('core.rules')
    return rules.SlowRule(name='slow', **kw)


def test_stall_not_applicable_when_complete_or_not_downloading():
    ev = importlib.import_module('core.evaluator')
    V = importlib.import_module('core.models').Verdict
    assert ev.evaluate_stall(_t(downloaded=1000), _stall(), 10).verdict is V.NOT_APPLICABLE
    assert ev.evaluate_stall(_t(state='paused'), _stall(), 10).verdict is V.NOT_APPLICABLE


def test_stall_violation_without_progress():
    ev = importlib.import_module('core.evaluator')
    models = importlib.import_module('core.models')
    res = ev.evaluate_stall(_t(), _stall(), 100)
    assert res.is_violation
    assert res.strike_type is models.StrikeType.STALLED


def test_stall_client_reported_stall_is_violation_on_first_sight():
    ev = importlib.import_module('core.evaluator')
    V = importlib.import_module('core.models').Verdict
    assert ev.evaluate_stall(_t(state='stalled'), _stall(), None).is_violation
    assert ev.evaluate_stall(_t(), _stall(), None).verdict is V.NO_VIOLATION


def test_stall_progress_signals_reset_above_minimum():
    ev = importlib.import_module('core.evaluator')
    V = importlib.import_module('core.models').Verdict
    res = ev.evaluate_stall(_t(downloaded=200), _stall(minimum_progress_bytes=50), 100)
    assert res.verdict is V.NO_VIOLATION and res.reset
    off = ev.evaluate_stall(_t(downloaded=200), _stall(reset_strikes_on_progress=False), 100)
    assert off.verdict is V.NO_VIOLATION and not off.reset


def test_stall_progress_below_minimum_still_strikes():
    ev = importlib.import_module('core.evaluator')
    models = importlib.import_module('core.models')
    rule = _stall(minimum_progress_bytes=10_000_000)
    trickle = models.TorrentView(hash='h', size=10 ** 9, downloaded=1_000_100, state='stalled')
    res = ev.evaluate_stall(trickle, rule, 1_000_000)
    assert res.is_violation and not res.reset
    assert res.strike_type is models.StrikeType.STALLED
    small = ev.evaluate_stall(_t(downloaded=120), _stall(minimum_progress_bytes=50), 100)
    assert small.is_violation and not small.reset
    assert 'below 50' in small.reason


def test_slow_zero_speed_while_not_stalled_is_not_applicable():
    ev = importlib.import_module('core.evaluator')
    V = importlib.import_module('core.models').Verdict
    res = ev.evaluate_slow(_t(download_speed=0), _slow(min_speed=100), None, 0.0)
    assert res.verdict is V.NOT_APPLICABLE
    assert ev.evaluate_slow(_t(), _slow(), None, 0.0).verdict is V.NOT_APPLICABLE


def test_slow_speed_needs_sustained_sample():
    ev = importlib.import_module('core.evaluator')
    models = importlib.import_module('core.models')
    rule = _slow(min_speed=100, min_sample_minutes=10)
    first = ev.evaluate_slow(_t(), rule, None, 1000.0)
    assert not first.is_violation and first.below_threshold
    later = ev.evaluate_slow(_t(), rule, 1000.0, 1000.0 + 600)
    assert later.is_violation
    assert later.strike_type is models.StrikeType.SLOW_SPEED


def test_slow_time_violation_from_eta():
    ev = importlib.import_module('core.evaluator')
    models = importlib.import_module('core.models')
    res = ev.evaluate_slow(_t(eta=3 * 3600), _slow(max_time_hours=2), None, 0.0)
    assert res.is_violation
    assert res.strike_type is models.StrikeType.SLOW_TIME


def test_slow_both_failing_reports_speed():
    ev = importlib.import_module('core.evaluator')
    models = importlib.import_module('core.models')
    res = ev.evaluate_slow(_t(eta=10 * 3600), _slow(min_speed=100, max_time_hours=2), 0.0, 0.0)
    assert res.strike_type is models.StrikeType.SLOW_SPEED


def test_slow_recovery_signals_reset():
    ev = importlib.import_module('core.evaluator')
    res = ev.evaluate_slow(_t(download_speed=500), _slow(min_speed=100), 0.0, 100.0)
    assert not res.is_violation and res.reset and not res.below_threshold
