# Console Monitoring & Metrics
# File: monitoring.py

"""
Health checks and metrics for the operator console.

Telemetry source failures are silent-degrade in the console itself; this
module is where they become observable in aggregate: failure counters per
source, tick latency, staleness of each field group, and the outcome of the
last dispatched command.
"""

import threading
import statistics
from datetime import datetime
from typing import Dict, List, Optional, Callable
from collections import deque, defaultdict
from dataclasses import dataclass, field
import logging

import psutil

from operator_console import ConsoleEngine, ConsoleState, TelemetrySource, TickReport

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# METRICS MODELS
# ============================================================================

@dataclass
class HealthCheck:
    """Health check result"""
    component: str
    status: str  # healthy, degraded, unhealthy
    timestamp: datetime
    details: Dict = field(default_factory=dict)
    latency_ms: Optional[float] = None

    def to_dict(self):
        """Convert to dictionary"""
        return {
            'component': self.component,
            'status': self.status,
            'timestamp': self.timestamp.isoformat(),
            'details': self.details,
            'latency_ms': self.latency_ms
        }

# ============================================================================
# METRICS COLLECTOR
# ============================================================================

class MetricsCollector:
    """Counters, gauges and bounded histograms keyed by name and labels"""

    def __init__(self, histogram_size: int = 1000):
        self.histogram_size = histogram_size
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, deque] = defaultdict(
            lambda: deque(maxlen=self.histogram_size)
        )
        self.lock = threading.Lock()

    def record_counter(self, name: str, value: int = 1, labels: Dict = None):
        """
        Add to a monotonically increasing counter

        Args:
            name: Metric name
            value: Value to add (default 1)
            labels: Optional labels for grouping
        """
        with self.lock:
            self.counters[self._make_key(name, labels)] += value

    def record_gauge(self, name: str, value: float, labels: Dict = None):
        with self.lock:
            self.gauges[self._make_key(name, labels)] = value

    def record_histogram(self, name: str, value: float, labels: Dict = None):
        """Record one observation (latencies, sizes)"""
        with self.lock:
            self.histograms[self._make_key(name, labels)].append(value)

    def get_counter(self, name: str, labels: Dict = None) -> int:
        return self.counters.get(self._make_key(name, labels), 0)

    def get_gauge(self, name: str, labels: Dict = None) -> float:
        return self.gauges.get(self._make_key(name, labels), 0.0)

    def get_histogram_stats(self, name: str, labels: Dict = None) -> Dict:
        """
        Summary statistics for a histogram

        Returns:
            Dictionary with count, sum, min, max, mean and percentiles
        """
        values = sorted(self.histograms.get(self._make_key(name, labels), ()))
        count = len(values)

        if not values:
            return {'count': 0, 'sum': 0, 'min': 0, 'max': 0, 'mean': 0,
                    'p50': 0, 'p95': 0, 'p99': 0}

        return {
            'count': count,
            'sum': sum(values),
            'min': values[0],
            'max': values[-1],
            'mean': statistics.mean(values),
            'p50': values[count // 2],
            'p95': values[int(count * 0.95)] if count > 20 else values[-1],
            'p99': values[int(count * 0.99)] if count > 100 else values[-1]
        }

    def _make_key(self, name: str, labels: Dict = None) -> str:
        if not labels:
            return name

        label_str = ','.join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_all_metrics(self) -> Dict:
        """Get all metrics summary"""
        with self.lock:
            counters = dict(self.counters)
            gauges = dict(self.gauges)
            histogram_names = list(self.histograms.keys())

        return {
            'counters': counters,
            'gauges': gauges,
            'histograms': {name: self.get_histogram_stats(name) for name in histogram_names},
            'timestamp': datetime.now().isoformat()
        }

# ============================================================================
# HEALTH MONITOR
# ============================================================================

class HealthMonitor:
    """Run registered health checks on demand"""

    def __init__(self, history_size: int = 100):
        self.checks: Dict[str, Callable] = {}
        self.health_history: deque = deque(maxlen=history_size)

    def register_check(self, name: str, check_fn: Callable):
        """
        Register health check function

        Args:
            name: Check name
            check_fn: Function that returns HealthCheck or boolean
        """
        self.checks[name] = check_fn
        logger.debug(f"Registered health check: {name}")

    def run_checks(self) -> List[HealthCheck]:
        """
        Run all registered health checks

        Returns:
            List of health check results; a check that raises is unhealthy
        """
        results = []

        for name, check_fn in self.checks.items():
            started = datetime.now()

            try:
                result = check_fn()
                latency = (datetime.now() - started).total_seconds() * 1000

                if isinstance(result, HealthCheck):
                    result.latency_ms = latency
                    results.append(result)
                else:
                    results.append(HealthCheck(
                        component=name,
                        status='healthy' if result else 'unhealthy',
                        timestamp=datetime.now(),
                        latency_ms=latency
                    ))

            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                results.append(HealthCheck(
                    component=name,
                    status='unhealthy',
                    timestamp=datetime.now(),
                    details={'error': str(e)}
                ))

        self.health_history.append({
            'timestamp': datetime.now().isoformat(),
            'results': [r.to_dict() for r in results]
        })
        return results

    def get_health_status(self) -> Dict:
        """Run checks and fold them into one overall status"""
        results = self.run_checks()

        overall_status = 'healthy'
        if any(r.status == 'unhealthy' for r in results):
            overall_status = 'unhealthy'
        elif any(r.status == 'degraded' for r in results):
            overall_status = 'degraded'

        return {
            'overall_status': overall_status,
            'checks': [r.to_dict() for r in results],
            'timestamp': datetime.now().isoformat(),
            'check_count': len(results)
        }

    def get_health_history(self, limit: int = 10) -> List[Dict]:
        return list(self.health_history)[-limit:]

# ============================================================================
# CONSOLE METRICS INTEGRATION
# ============================================================================

class ConsoleMetrics:
    """Hook metrics and health checks into a ConsoleEngine"""

    def __init__(self, engine: ConsoleEngine, collector: Optional[MetricsCollector] = None):
        self.engine = engine
        self.collector = collector or MetricsCollector()
        self.health_monitor = HealthMonitor()

        engine.aggregator.tick_listeners.append(self.record_tick)
        engine.state.subscribe(self.record_state_change)
        self._setup_health_checks()

    def record_tick(self, report: TickReport):
        self.collector.record_counter('telemetry_ticks_total')
        self.collector.record_histogram('telemetry_tick_duration_ms', report.duration_ms)

        for source in report.failures:
            self.collector.record_counter(
                'telemetry_source_failures_total',
                labels={'source': source.value}
            )
        for source in report.skipped:
            self.collector.record_counter(
                'telemetry_source_skipped_total',
                labels={'source': source.value}
            )

        stale = self.engine.state.stale_groups(self.engine.config.stale_after)
        self.collector.record_gauge('telemetry_stale_groups', len(stale))

    def record_state_change(self, kind: str, state: ConsoleState):
        if kind == 'outcome' and state.last_outcome is not None:
            outcome = state.last_outcome
            self.collector.record_counter(
                'dispatch_total',
                labels={
                    'intent': outcome.intent.value,
                    'result': 'success' if outcome.success else outcome.error
                }
            )
        elif kind == 'route':
            self.collector.record_gauge('route_waypoints', len(state.route))

    def _setup_health_checks(self):
        self.health_monitor.register_check('poll_loop', self._check_poll_loop)
        self.health_monitor.register_check('telemetry', self._check_telemetry)
        self.health_monitor.register_check('dispatch', self._check_dispatch)
        self.health_monitor.register_check('system_resources', self._check_system_resources)

    def _check_poll_loop(self) -> HealthCheck:
        running = self.engine.aggregator.running
        return HealthCheck(
            component='poll_loop',
            status='healthy' if running else 'unhealthy',
            timestamp=datetime.now(),
            details={
                'running': running,
                'ticks': self.engine.aggregator.ticks_started,
                'poll_interval': self.engine.config.poll_interval
            }
        )

    def _check_telemetry(self) -> HealthCheck:
        """Degraded when some field groups are stale, unhealthy when all are"""
        stale = self.engine.state.stale_groups(self.engine.config.stale_after)

        if len(stale) == len(TelemetrySource):
            status = 'unhealthy'
        elif stale:
            status = 'degraded'
        else:
            status = 'healthy'

        snapshot = self.engine.state.snapshot
        ages = {}
        for source in TelemetrySource:
            reading = snapshot.reading(source)
            ages[source.value] = round(reading.age(), 3) if reading else None

        return HealthCheck(
            component='telemetry',
            status=status,
            timestamp=datetime.now(),
            details={
                'stale': [s.value for s in stale],
                'failing': [s.value for s in self.engine.aggregator.failing_sources],
                'age_seconds': ages,
                'stale_after': self.engine.config.stale_after
            }
        )

    def _check_dispatch(self) -> HealthCheck:
        outcome = self.engine.state.last_outcome
        status = 'healthy' if outcome is None or outcome.success else 'degraded'
        return HealthCheck(
            component='dispatch',
            status=status,
            timestamp=datetime.now(),
            details={'last_outcome': outcome.to_dict() if outcome else None}
        )

    def _check_system_resources(self) -> HealthCheck:
        """Check host resources of the console machine"""
        cpu_percent = psutil.cpu_percent(interval=None)
        memory = psutil.virtual_memory()

        status = 'healthy'
        if cpu_percent > 90 or memory.percent > 90:
            status = 'unhealthy'
        elif cpu_percent > 70 or memory.percent > 70:
            status = 'degraded'

        return HealthCheck(
            component='system_resources',
            status=status,
            timestamp=datetime.now(),
            details={
                'cpu_percent': cpu_percent,
                'memory_percent': memory.percent,
                'memory_available_gb': memory.available / (1024**3)
            }
        )

    def get_dashboard_data(self) -> Dict:
        return {
            'health': self.health_monitor.get_health_status(),
            'metrics': self.collector.get_all_metrics(),
            'console': self.engine.get_status(),
            'timestamp': datetime.now().isoformat()
        }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format

        Returns:
            Prometheus-formatted metrics string
        """
        metrics = self.collector.get_all_metrics()
        output = []
        typed = set()

        def declare(name: str, kind: str):
            clean_name = name.split('{')[0]
            if clean_name not in typed:
                typed.add(clean_name)
                output.append(f"# TYPE {clean_name} {kind}")

        for name, value in sorted(metrics['counters'].items()):
            declare(name, 'counter')
            output.append(f"{name} {value}")

        for name, value in sorted(metrics['gauges'].items()):
            declare(name, 'gauge')
            output.append(f"{name} {value}")

        for name, stats in sorted(metrics['histograms'].items()):
            if stats['count'] > 0:
                declare(name, 'summary')
                output.append(f"{name}_count {stats['count']}")
                output.append(f"{name}_sum {stats['sum']}")
                output.append(f"{name}{{quantile=\"0.5\"}} {stats['p50']}")
                output.append(f"{name}{{quantile=\"0.95\"}} {stats['p95']}")
                output.append(f"{name}{{quantile=\"0.99\"}} {stats['p99']}")

        return "\n".join(output) + "\n"
