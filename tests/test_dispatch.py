import threading

from cpu_stress.dispatch import LOOPBACK, build_target_url


class BrokenTopology:
    def get_targets(self):
        raise RuntimeError("api unreachable")

    def is_local(self, address):
        return False


def test_zero_targets_run_locally_without_network(make_dispatcher, session):
    dispatcher = make_dispatcher([])
    assert dispatcher.resolve_targets() == [LOOPBACK]
    report = dispatcher.send_load(50, 40)
    assert report.local is True
    assert report.work is not None and report.work.elapsed_ms >= 35
    assert session.calls == []


def test_own_pod_ip_is_treated_as_local(context, cpu, session):
    from dataclasses import replace
    from cpu_stress.dispatch import Dispatcher, StaticTopologyProvider

    context.config = replace(context.config, pod_ip="10.0.0.9")
    dispatcher = Dispatcher(context, cpu, StaticTopologyProvider(["10.0.0.9"]), session=session)
    assert dispatcher.send_load(100, 20).local is True
    assert session.calls == []


def test_failing_topology_falls_back_to_loopback(context, cpu, session):
    from cpu_stress.dispatch import Dispatcher

    dispatcher = Dispatcher(context, cpu, BrokenTopology(), session=session)
    assert dispatcher.resolve_targets() == [LOOPBACK]


def test_request_count_scales_with_intensity(make_dispatcher):
    dispatcher = make_dispatcher(["10.0.0.1", "10.0.0.2"])
    assert dispatcher.request_count(0) == 1
    assert dispatcher.request_count(10) == 1
    assert dispatcher.request_count(50) == 2
    assert dispatcher.request_count(100) == 4


def test_fan_out_is_round_robin(make_dispatcher, session, fast_config):
    targets = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    report = make_dispatcher(targets).send_load(100, 30)

    assert report.requested == 4
    assert report.succeeded == 4
    hits = [next(t for t in targets if t in call["url"]) for call in session.calls]
    assert sorted(hits) == ["10.0.0.1", "10.0.0.1", "10.0.0.2", "10.0.0.3"]
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"].endswith(":3000/cpu-load-intensity")
    assert call["json"] == {"durationMs": 30, "intensityPercent": 100}
    assert call["timeout"] == (30 + fast_config.intensity_timeout_buffer_ms) / 1000.0


def test_failed_targets_do_not_fail_the_batch(make_dispatcher, session):
    session.fail_targets = {"10.0.0.2"}
    report = make_dispatcher(["10.0.0.1", "10.0.0.2"]).send_load(100, 30)
    assert report.requested == 4
    assert report.failed == 2
    assert report.succeeded == 2
    assert all(o.error for o in report.outcomes if not o.ok)


def test_http_error_status_counts_as_failure(make_dispatcher, session):
    session.status_code = 503
    report = make_dispatcher(["10.0.0.1", "10.0.0.2"]).send_load(25, 30)
    assert report.requested == 1
    assert report.failed == 1
    assert report.outcomes[0].status_code == 503


def test_send_load_skips_when_stopped(make_dispatcher, session, context):
    context.interrupt()
    report = make_dispatcher(["10.0.0.1", "10.0.0.2"]).send_load(100, 30)
    assert report.requested == 0
    assert session.calls == []


def test_rounds_run_locally(make_dispatcher, session):
    assert make_dispatcher([]).run_rounds(rounds=2) == 2
    assert session.calls == []


def test_rounds_fan_out_get_requests(make_dispatcher, session, fast_config):
    completed = make_dispatcher(["10.0.0.1", "10.0.0.2"]).run_rounds(rounds=2)
    assert completed == 2
    assert len(session.calls) == 2 * fast_config.concurrency
    assert all(c["method"] == "GET" and c["url"].endswith("/cpu-load") for c in session.calls)
    assert session.calls[0]["timeout"] == fast_config.fetch_timeout_ms / 1000.0


def test_rounds_stop_before_next_round(make_dispatcher):
    stop_event = threading.Event()
    stop_event.set()
    assert make_dispatcher(["10.0.0.1", "10.0.0.2"]).run_rounds(rounds=5, stop_event=stop_event) == 0


def test_broadcast_posts_once_per_target(make_dispatcher, session):
    report = make_dispatcher().broadcast("/internal-stop", ["10.0.0.1", "10.0.0.2"], 1.0)
    assert report.requested == 2
    assert {c["url"] for c in session.calls} == {
        "http://10.0.0.1:3000/internal-stop", "http://10.0.0.2:3000/internal-stop",
    }


def test_build_target_url():
    assert build_target_url("10.0.0.1", 3000, "/cpu-load") == "http://10.0.0.1:3000/cpu-load"
    assert build_target_url("10.0.0.1:8080", 3000, "/cpu-load") == "http://10.0.0.1:8080/cpu-load"
    assert build_target_url("http://svc.local/", 3000, "/cpu-load") == "http://svc.local/cpu-load"


def test_build_target_url_brackets_ipv6():
    assert build_target_url("fd00::1", 3000, "/cpu-load") == "http://[fd00::1]:3000/cpu-load"
    assert build_target_url("[fd00::1]", 3000, "/cpu-load") == "http://[fd00::1]:3000/cpu-load"
    assert build_target_url("[fd00::1]:8080", 3000, "/cpu-load") == "http://[fd00::1]:8080/cpu-load"


def test_close_leaves_injected_session_open(make_dispatcher, session):
    make_dispatcher().close()
    assert session.closed is False
