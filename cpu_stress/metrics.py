from prometheus_client import Counter, Gauge, Histogram

# Engine metrics, registered once on the default registry and served on /metrics
stress_test_active = Gauge('stress_test_active', 'Whether a stress test holds the engine lock')
stress_phase_intensity = Gauge('stress_phase_intensity_percent', 'Current load intensity of the phase sequence')
dispatch_requests = Counter('stress_dispatch_requests_total', 'Work requests fanned out to replicas',
                            labelnames=['outcome'])
stop_waves = Counter('stress_stop_waves_total', 'Stop broadcast waves sent')
stop_signals = Counter('stress_stop_signals_total', 'Stop signals sent to replicas',
                       labelnames=['outcome'])
suite_iterations = Counter('stress_suite_iterations_total', 'Test suite iterations by outcome',
                           labelnames=['outcome'])
cpu_work_seconds = Histogram('stress_cpu_work_seconds', 'Wall time of local CPU work calls',
                             labelnames=['kind'])
