"""
Prometheus configuration sync tests
"""
from unittest import mock

import pytest
import requests
import yaml

from eth_services.errors import IntegrationError, StartupError
from eth_services.metrics_sync import PROMETHEUS_CONFIG, STAGING_SUFFIX, MetricsSyncAdapter, validate_config
from eth_services.registry import ServiceStatus
from eth_services.templates import TemplateRenderer, compose_networks


@pytest.fixture
def adapter(registry, runtime, settings):
    return MetricsSyncAdapter(registry, runtime, settings)


def install_files(registry, settings, service_type, name, params=None, status=ServiceStatus.RUNNING):
    rendered = TemplateRenderer().render(service_type, name, params or {})
    rendered.write(settings.services_root / name)
    registry.register(name, service_type, metadata=rendered.metadata)
    registry.transition(name, ServiceStatus.RUNNING)
    if status != ServiceStatus.RUNNING:
        registry.transition(name, status)
    return registry.get(name)


@pytest.fixture
def monitoring(adapter, registry, runtime, settings):
    runtime.networks.update({'monitoring-net': True, 'validator-net': True})
    stack = install_files(registry, settings, 'metrics', 'monitoring')
    adapter.bootstrap('monitoring', settings.services_root / 'monitoring')
    return stack


def jobs(settings):
    with open(settings.services_root / 'monitoring' / PROMETHEUS_CONFIG) as f:
        return {j['job_name']: j['static_configs'][0]['targets'] for j in yaml.safe_load(f)['scrape_configs']}


def test_build_config_covers_every_type(adapter, registry, settings):
    install_files(registry, settings, 'ethnode', 'ethnode1', {'execution_client': 'geth', 'consensus_client': 'prysm'})
    install_files(registry, settings, 'validator', 'vero')
    install_files(registry, settings, 'signer', 'web3signer')
    install_files(registry, settings, 'validator', 'leaving')
    registry.transition('leaving', ServiceStatus.REMOVING)

    config = adapter.build_config(exclude='web3signer')
    targets = {j['job_name']: j['static_configs'][0]['targets'] for j in config['scrape_configs']}

    assert targets == {
        'prometheus': ['localhost:9090'],
        'ethnode1-geth': ['ethnode1-geth:6060'],
        'ethnode1-prysm': ['ethnode1-prysm:8080'],
        'vero': ['vero:9010'],
    }
    assert config['global']['scrape_interval'] == '15s'


def test_install_adds_targets_and_network(adapter, monitoring, registry, runtime, settings):
    ethnode = install_files(registry, settings, 'ethnode', 'ethnode1')
    runtime.networks['ethnode1-net'] = True

    adapter.on_after_install(ethnode)

    assert jobs(settings)['ethnode1-reth'] == ['ethnode1-reth:9001']
    assert 'ethnode1-net' in compose_networks(settings.services_root / 'monitoring' / 'compose.yml')
    # Network change is applied with compose up rather than a reload
    assert runtime.calls == ['up']


def test_remove_drops_targets_and_reloads(adapter, monitoring, registry, runtime, settings, prometheus_reload):
    vero = install_files(registry, settings, 'validator', 'vero')
    adapter.on_after_install(vero)
    assert 'vero' in jobs(settings)

    warnings = adapter.on_before_remove(vero)

    assert warnings == []
    assert 'vero' not in jobs(settings)
    prometheus_reload.assert_called_with('http://localhost:9090/-/reload', timeout=settings.reload_timeout)


def test_stopped_stack_is_written_but_not_reloaded(adapter, registry, settings, prometheus_reload):
    install_files(registry, settings, 'metrics', 'monitoring', status=ServiceStatus.STOPPED)
    vero = install_files(registry, settings, 'validator', 'vero')

    adapter.on_after_install(vero)

    assert 'vero' in jobs(settings)
    prometheus_reload.assert_not_called()


def test_invalid_config_leaves_active_file_untouched(adapter, monitoring, registry, settings, prometheus_reload):
    active = settings.services_root / 'monitoring' / PROMETHEUS_CONFIG
    before = active.read_bytes()
    vero = install_files(registry, settings, 'validator', 'vero')

    with mock.patch.object(MetricsSyncAdapter, 'build_config', return_value={'scrape_configs': []}):
        with pytest.raises(IntegrationError, match='invalid'):
            adapter.on_after_install(vero)

    assert active.read_bytes() == before
    assert not (settings.services_root / 'monitoring' / (PROMETHEUS_CONFIG + STAGING_SUFFIX)).exists()
    prometheus_reload.assert_not_called()


def test_reload_failure_falls_back_to_restart(adapter, monitoring, registry, runtime, settings, prometheus_reload):
    prometheus_reload.side_effect = requests.exceptions.ConnectionError('refused')
    vero = install_files(registry, settings, 'validator', 'vero')

    warnings = adapter.on_after_install(vero)

    assert runtime.calls == ['restart']
    assert warnings and 'restarted instead of reloaded' in warnings[0]


def test_reload_and_restart_failing_raises(adapter, monitoring, registry, runtime, settings, prometheus_reload):
    prometheus_reload.return_value = mock.Mock(status_code=500)
    runtime.fail['restart'] = StartupError(['docker', 'compose', 'restart'], 1, 'no such service')
    vero = install_files(registry, settings, 'validator', 'vero')

    with pytest.raises(IntegrationError):
        adapter.on_after_install(vero)


def test_metrics_stack_ignores_itself(adapter, monitoring, runtime):
    assert adapter.on_after_install(monitoring) == []
    assert adapter.on_before_remove(monitoring) == []
    assert runtime.calls == []


def test_no_metrics_stack_is_a_no_op(adapter, registry, settings):
    vero = install_files(registry, settings, 'validator', 'vero')
    assert adapter.on_after_install(vero) == []


def test_bootstrap_joins_existing_ethnodes(adapter, registry, settings):
    install_files(registry, settings, 'ethnode', 'ethnode1')
    install_files(registry, settings, 'ethnode', 'ethnode2')
    install_files(registry, settings, 'metrics', 'monitoring')

    joined = adapter.bootstrap('monitoring', settings.services_root / 'monitoring')

    assert joined == ['ethnode1-net', 'ethnode2-net']
    assert {'ethnode1-reth', 'ethnode2-lodestar', 'monitoring-node-exporter'} <= set(jobs(settings))


@pytest.mark.parametrize('document,problem', [
    ({'scrape_configs': [{'job_name': 'a', 'static_configs': [{'targets': ['x:1']}]}]}, "missing 'global'"),
    ({'global': {}, 'scrape_configs': []}, "missing 'scrape_configs'"),
    ({'global': {}, 'scrape_configs': [{'static_configs': [{'targets': ['x:1']}]}]}, 'has no job_name'),
    ({'global': {}, 'scrape_configs': [{'job_name': 'a', 'static_configs': [{'targets': ['x:1']}]},
                                       {'job_name': 'a', 'static_configs': [{'targets': ['y:1']}]}]},
     'duplicate job_name a'),
    ({'global': {}, 'scrape_configs': [{'job_name': 'a', 'static_configs': [{'targets': []}]}]}, 'has no targets'),
])
def test_validate_config(tmp_path, document, problem):
    path = tmp_path / 'prometheus.yml'
    path.write_text(yaml.safe_dump(document))
    assert any(problem in error for error in validate_config(path))


def test_validate_unparseable(tmp_path):
    path = tmp_path / 'prometheus.yml'
    path.write_text('global: [\n')
    assert validate_config(path)[0].startswith('unreadable')
