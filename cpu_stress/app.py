"""
Flask control API for the stress engine.

Routes are thin: they parse the request, call the engine and render JSON.
The replica-side routes (/cpu-load, /cpu-load-intensity, /internal-stop) are
the ones the dispatch layer calls on peers.
"""

import argparse
import json
import logging
import math
import os
import queue
import threading
import time

from flask import Flask, Response, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from cpu_stress.config import ConfigError, StressConfig
from cpu_stress.dispatch import StaticTopologyProvider
from cpu_stress.engine import MODE_LOAD, MODE_PHASED, MODE_SUITE, StressEngine
from cpu_stress.suite import StaticMetricsProvider

logger = logging.getLogger(__name__)


def build_engine(config: StressConfig = None) -> StressEngine:
    """Engine with Kubernetes providers when running in a cluster, static ones otherwise."""
    config = config or StressConfig.from_env()
    if os.environ.get("KUBERNETES_SERVICE_HOST"):
        from cpu_stress.kubernetes_providers import KubernetesMetricsProvider, KubernetesTopologyProvider
        try:
            topology = KubernetesTopologyProvider(config)
            metrics_provider = KubernetesMetricsProvider(config)
            logger.info(f"Using Kubernetes providers (namespace {config.namespace})")
            return StressEngine(config, topology=topology, metrics_provider=metrics_provider)
        except Exception as e:
            logger.error(f"Kubernetes providers unavailable, running standalone: {e}")
    return StressEngine(config, topology=StaticTopologyProvider(), metrics_provider=StaticMetricsProvider())


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(engine: StressEngine) -> Flask:
    app = Flask(__name__)
    app.config["ENGINE"] = engine

    def _start(mode, iterations=None, overrides=None):
        try:
            result = engine.start(mode, iterations=iterations, overrides=overrides)
        except ConfigError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(result.to_dict()), 202 if result.accepted else 409

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({
            "status": "healthy",
            "pod": engine.config.pod_name,
            "active_test": engine.context.active_test,
        }), 200

    @app.route('/generate-load', methods=['POST'])
    def generate_load():
        """Legacy round-based load across all replicas."""
        return _start(MODE_LOAD, overrides=_json_body().get("overrides"))

    @app.route('/phased-load', methods=['POST'])
    def phased_load():
        return _start(MODE_PHASED, overrides=_json_body().get("overrides"))

    @app.route('/run-test-suite', methods=['POST'])
    def run_test_suite():
        data = _json_body()
        return _start(MODE_SUITE, iterations=data.get("iterations"), overrides=data.get("overrides"))

    @app.route('/stop-load', methods=['POST'])
    def stop_load():
        return jsonify(engine.stop()), 200

    @app.route('/interrupt-iteration', methods=['POST'])
    def interrupt_iteration():
        """Abandon the running suite iteration; the suite goes on with the next one."""
        interrupted = engine.interrupt_iteration()
        return jsonify({"interrupted": interrupted, **engine.get_phase_state()}), 200

    @app.route('/internal-stop', methods=['POST'])
    def internal_stop():
        return jsonify(engine.receive_remote_stop()), 200

    @app.route('/cpu-load', methods=['GET'])
    def cpu_load():
        result = engine.run_remote_full_work()
        return jsonify({**result.to_dict(), "pod": engine.config.pod_name}), 200

    @app.route('/cpu-load-intensity', methods=['POST'])
    def cpu_load_intensity():
        data = _json_body()
        try:
            duration_ms = int(data.get("durationMs", engine.config.chunk_duration_ms))
            intensity = float(data.get("intensityPercent", data.get("intensity", 100)))
        except (TypeError, ValueError, OverflowError):
            return jsonify({"error": "durationMs and intensityPercent must be numbers"}), 400
        if not math.isfinite(intensity):
            return jsonify({"error": "intensityPercent must be finite"}), 400
        if duration_ms < 0:
            return jsonify({"error": "durationMs must be >= 0"}), 400
        result = engine.run_remote_work(duration_ms, intensity)
        return jsonify({**result.to_dict(), "intensity": intensity, "pod": engine.config.pod_name}), 200

    @app.route('/stress-stream', methods=['GET'])
    def stress_stream():
        """Server-sent events reporting progress of one full-intensity work call."""
        duration_ms = request.args.get("duration", engine.config.work_duration_ms, type=int)
        if duration_ms is None or duration_ms < 0:
            return jsonify({"error": "duration must be a non-negative integer"}), 400
        events = queue.Queue()

        def on_progress(progress, elapsed_ms, result):
            events.put({"progress": progress, "elapsed": elapsed_ms, "result": result})

        def worker():
            try:
                outcome = engine.stream_work(duration_ms, on_progress)
                events.put({**outcome.to_dict(), "done": True})
            except Exception as e:
                logger.exception("Streaming work failed")
                events.put({"status": "error", "error": str(e), "done": True})

        threading.Thread(target=worker, daemon=True, name="stress-stream").start()

        def generate():
            yield f"data: {json.dumps({'status': 'started', 'pod': engine.config.pod_name, 'duration': duration_ms})}\n\n"
            while True:
                event = events.get()
                yield f"data: {json.dumps(event)}\n\n"
                if event.get("done"):
                    break

        return Response(generate(), mimetype='text/event-stream',
                        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})

    @app.route('/test-suite-status', methods=['GET'])
    def test_suite_status():
        phase = engine.get_phase_state()
        return jsonify({
            "running": engine.context.active_test,
            "mode": engine.mode,
            "completed_iterations": len(engine.context.results_snapshot()),
            **phase,
            "timestamp": time.time(),
        }), 200

    @app.route('/test-suite-results', methods=['GET'])
    def test_suite_results():
        return jsonify(engine.get_suite_results().to_dict()), 200

    @app.route('/cluster-status', methods=['GET'])
    def cluster_status():
        return jsonify({**engine.get_cluster_status(), "timestamp": time.time()}), 200

    @app.route('/status', methods=['GET'])
    def status():
        return jsonify(engine.get_status()), 200

    if engine.config.metrics_enabled:
        @app.route('/metrics', methods=['GET'])
        def metrics_endpoint():
            return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="CPU stress-test orchestration engine")
    parser.add_argument('--host', default='0.0.0.0', help='Interface to bind')
    parser.add_argument('--port', type=int, default=None, help='Port to listen on (default: PORT env or 3000)')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s - %(levelname)s - %(message)s')

    engine = build_engine()
    port = args.port or engine.config.port
    app = create_app(engine)
    logger.info(f"Stress engine listening on {args.host}:{port} (pod {engine.config.pod_name})")
    try:
        app.run(host=args.host, port=port, debug=False, threaded=True)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
