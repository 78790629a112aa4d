from cpu_stress.phases import PhaseSequencer
from cpu_stress.state import Phase

from conftest import SleepingDispatcher


def _run(context, dispatcher=None, observer=None):
    dispatcher = dispatcher or SleepingDispatcher(context)
    sequencer = PhaseSequencer(context, dispatcher.send_load, on_phase_change=observer)
    return sequencer.run(), dispatcher


def test_phases_run_in_order(context):
    seen = []

    def observer(phase, intensity, progress):
        if not seen or seen[-1] != phase:
            seen.append(phase)

    result, _ = _run(context, observer=observer)
    assert result.was_stopped is False
    assert seen == [Phase.WARM_UP, Phase.RAMP_UP, Phase.STEADY, Phase.RAMP_DOWN, Phase.COMPLETE]
    assert context.phase_snapshot().phase == Phase.COMPLETE


def test_step_intensities_and_durations(context):
    _, dispatcher = _run(context)
    intensities = [round(i) for i, _ in dispatcher.calls]
    # 5 ramp-up steps, ceil(50 / 20) steady chunks, 5 ramp-down steps
    assert intensities == [20, 40, 60, 80, 100, 100, 100, 100, 80, 60, 40, 20, 0]
    assert {d for _, d in dispatcher.calls} == {20}


def test_measured_durations_add_up_to_elapsed(context):
    result, _ = _run(context)
    durations = result.durations
    assert durations.warm_up_ms >= 15
    assert durations.ramp_up_ms >= 95
    assert abs(durations.total_ms - result.elapsed_ms) <= result.elapsed_ms * 0.05 + 10


def test_stop_during_ramp_up_cuts_the_phase_short(context, fast_config):
    dispatcher = SleepingDispatcher(context)
    base_send = dispatcher.send_load

    def send_load(intensity, duration_ms, **kwargs):
        base_send(intensity, duration_ms, **kwargs)
        if round(intensity) == 40:
            context.interrupt()

    sequencer = PhaseSequencer(context, send_load)
    result = sequencer.run()

    assert result.was_stopped is True
    assert result.stopped_in == Phase.RAMP_UP
    assert result.durations.ramp_up_ms < fast_config.ramp_up_ms
    assert result.durations.steady_ms == 0
    assert result.durations.ramp_down_ms == 0
    assert len(dispatcher.calls) == 2
    assert context.phase_snapshot().phase == Phase.RAMP_UP


def test_stop_during_warm_up_sends_no_load(context):
    context.timers.schedule(5, context.interrupt)
    context.config = context.config.with_overrides({"warm_up_ms": 2000})
    result, dispatcher = _run(context)
    assert result.was_stopped is True
    assert result.stopped_in == Phase.WARM_UP
    assert result.durations.warm_up_ms < 1000
    assert dispatcher.calls == []


def test_failing_observer_is_ignored(context):
    def observer(phase, intensity, progress):
        raise RuntimeError("dashboard disconnected")

    result, _ = _run(context, observer=observer)
    assert result.was_stopped is False


def test_result_serialization(context):
    result, _ = _run(context)
    data = result.to_dict()
    assert data["was_stopped"] is False
    assert data["stopped_in"] is None
    assert data["durations"]["total_ms"] == result.durations.total_ms


def test_steady_runs_when_ramp_step_rounds_to_zero(context, fast_config):
    context.config = context.config.with_overrides({"ramp_up_ms": 0, "steady_ms": 30})
    seen = []
    result, dispatcher = _run(context, observer=lambda phase, intensity, progress: seen.append(phase))

    assert result.was_stopped is False
    assert Phase.STEADY in seen
    steady_calls = [d for i, d in dispatcher.calls if i == 100 and d > 0]
    # ceil(30 / chunk_duration_ms) chunks of chunk_duration_ms
    assert steady_calls == [fast_config.chunk_duration_ms] * 3
    assert result.durations.steady_ms >= 25
