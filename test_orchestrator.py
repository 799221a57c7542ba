"""
Lifecycle orchestrator tests: flows, failure policy, single flight,
rollback and the cross-service remove scenario.
"""
import threading

import pytest

from conftest import FakeRuntime
from eth_services.descriptors import METRICS_INTEGRATION, SHARED_RESOURCE_INTEGRATION, Operation
from eth_services.envfile import read_env
from eth_services.errors import (ConcurrentOperationError, CriticalStepFailure, IntegrationError,
                                 InvalidTransitionError, NonCriticalStepFailure, RunCancelledError,
                                 ServiceExistsError, StartupError, TemplateError, UnknownServiceError)
from eth_services.integrations import IntegrationAdapter, SharedResourceAdapter
from eth_services.lifecycle import RunOutcome, StepStatus
from eth_services.orchestrator import LifecycleOrchestrator
from eth_services.registry import ServiceStatus
from eth_services.templates import ROLLBACK_FILE, TemplateRenderer


class FailingMetricsAdapter(IntegrationAdapter):
    def on_before_remove(self, instance):
        raise IntegrationError('prometheus.yml failed validation')


def test_install_ethnode_creates_declared_resources(orchestrator, registry, runtime, settings):
    """Install leaves the instance Running with every declared resource present"""
    run = orchestrator.install('ethnode', 'ethnode1', {'execution_client': 'reth', 'consensus_client': 'lodestar'})

    assert run.outcome == RunOutcome.SUCCEEDED
    assert [s.status for s in run.steps] == [StepStatus.SUCCEEDED] * 5
    assert registry.get('ethnode1').status == ServiceStatus.RUNNING
    assert runtime.container_names() == ['ethnode1-lodestar', 'ethnode1-reth']
    assert runtime.volumes == {'ethnode1_el-data', 'ethnode1_cl-data'}
    assert 'ethnode1-net' in runtime.networks
    assert (settings.services_root / 'ethnode1' / 'jwt' / 'jwtsecret').exists()
    assert read_env(settings.services_root / 'ethnode1' / '.env')['EXECUTION_CLIENT'] == 'reth'


def test_install_existing_name_is_rejected(orchestrator):
    orchestrator.install('ethnode', 'ethnode1')
    with pytest.raises(ServiceExistsError):
        orchestrator.install('ethnode', 'ethnode1')


def test_install_validator_needs_installed_beacon_node(orchestrator, registry):
    with pytest.raises(UnknownServiceError):
        orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode9']})
    assert registry.get('vero') is None


def test_remove_twice_returns_not_found(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1')

    first = orchestrator.remove('ethnode1')
    second = orchestrator.remove('ethnode1')

    assert first.outcome == RunOutcome.SUCCEEDED
    assert second.outcome == RunOutcome.NOT_FOUND
    assert registry.get('ethnode1') is None
    assert runtime.container_names() == []
    assert runtime.volumes == set()
    assert 'ethnode1-net' not in runtime.networks


def test_remove_unknown_name_is_not_an_error(orchestrator):
    assert orchestrator.remove('never-installed').outcome == RunOutcome.NOT_FOUND


@pytest.mark.parametrize('count', [1, 2, 3])
def test_shared_network_released_with_last_validator(orchestrator, runtime, count):
    names = [f"validator{i}" for i in range(1, count + 1)]
    for name in names:
        orchestrator.install('validator', name)

    for index, name in enumerate(names, 1):
        run = orchestrator.remove(name)
        remove_networks = run.step('remove_networks')
        if index < count:
            assert 'validator-net' in runtime.networks
            assert 'web3signer-net' in runtime.networks
            assert any('kept shared network validator-net' in n for n in remove_networks.notes)
        else:
            assert 'validator-net' not in runtime.networks
            assert 'web3signer-net' not in runtime.networks


def test_signer_keeps_web3signer_net_while_validator_uses_it(orchestrator, runtime):
    orchestrator.install('signer', 'web3signer')
    orchestrator.install('validator', 'vero')

    orchestrator.remove('web3signer')

    assert 'web3signer-net' in runtime.networks
    orchestrator.remove('vero')
    assert 'web3signer-net' not in runtime.networks


def test_remove_ethnode_rewrites_validator_and_keeps_it_running(orchestrator, registry, runtime, settings):
    """install ethnode1, install vero on it, remove ethnode1"""
    orchestrator.install('ethnode', 'ethnode1', {'consensus_client': 'lodestar'})
    assert registry.get('ethnode1').status == ServiceStatus.RUNNING

    orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode1']})
    vero = registry.get('vero')
    assert vero.status == ServiceStatus.RUNNING
    assert vero.dependencies == ['ethnode1']
    vero_env = settings.services_root / 'vero' / '.env'
    assert read_env(vero_env)['BEACON_NODE_URLS'] == 'http://ethnode1-lodestar:5052'
    assert 'ethnode1-net' in runtime.containers['vero']['networks']

    run = orchestrator.remove('ethnode1')

    assert run.ok
    assert registry.get('ethnode1') is None
    assert 'ethnode1-net' not in runtime.networks
    assert read_env(vero_env)['BEACON_NODE_URLS'] == ''
    assert 'ethnode1-net' not in runtime.containers['vero']['networks']
    vero = registry.get('vero')
    assert vero.status == ServiceStatus.RUNNING
    assert vero.dependencies == []
    assert 'vero: BEACON_NODE_URLS is now empty' in ' '.join(run.warnings)


def test_remove_one_of_two_beacon_nodes(orchestrator, registry, settings):
    orchestrator.install('ethnode', 'ethnode1', {'consensus_client': 'teku'})
    orchestrator.install('ethnode', 'ethnode2', {'consensus_client': 'lighthouse'})
    orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode1', 'ethnode2']})

    orchestrator.remove('ethnode1')

    env = read_env(settings.services_root / 'vero' / '.env')
    assert env['BEACON_NODE_URLS'] == 'http://ethnode2-lighthouse:5052'
    assert registry.get('vero').metadata['beacon_nodes'] == ['ethnode2']


def test_non_critical_failure_does_not_block_remove(registry, runtime, settings):
    adapters = {METRICS_INTEGRATION: FailingMetricsAdapter(registry, runtime, settings)}
    orchestrator = LifecycleOrchestrator(registry, runtime, settings, adapters=adapters)
    orchestrator.install('ethnode', 'ethnode1')

    run = orchestrator.remove('ethnode1')

    assert run.outcome == RunOutcome.COMPLETED_WITH_WARNINGS
    assert run.step('cleanup_integrations').status == StepStatus.FAILED_NON_CRITICAL
    assert 'prometheus.yml failed validation' in run.step('cleanup_integrations').error
    failures = run.non_critical_failures
    assert [type(f) for f in failures] == [NonCriticalStepFailure]
    assert failures[0].step == 'cleanup_integrations'
    assert isinstance(failures[0].cause, IntegrationError)
    assert run.step('unregister').status == StepStatus.SUCCEEDED
    assert registry.get('ethnode1') is None
    assert runtime.container_names() == []


def test_critical_failure_marks_instance_failed(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1')
    runtime.fail['remove_volumes'] = StartupError(['docker', 'volume', 'rm'], 1, 'disk on fire')

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.remove('ethnode1')

    assert excinfo.value.step == 'remove_volumes'
    run = excinfo.value.run
    assert run.outcome == RunOutcome.FAILED
    assert run.step('remove_networks').status == StepStatus.SKIPPED
    instance = registry.get('ethnode1')
    assert instance.status == ServiceStatus.FAILED
    assert instance.last_error.startswith('remove_volumes:')
    assert instance.last_run['outcome'] == 'failed'

    # Failed -> Removing is allowed, so a retry converges
    del runtime.fail['remove_volumes']
    assert orchestrator.remove('ethnode1').ok
    assert registry.get('ethnode1') is None


class BlockingRuntime(FakeRuntime):
    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def stop(self, handles, timeout):
        self.entered.set()
        self.release.wait(5)
        return super().stop(handles, timeout)


def test_stop_while_remove_in_flight_is_rejected(registry, settings):
    runtime = BlockingRuntime()
    orchestrator = LifecycleOrchestrator(registry, runtime, settings)
    orchestrator.install('ethnode', 'ethnode1')
    results = {}

    def remove():
        results['run'] = orchestrator.remove('ethnode1')

    worker = threading.Thread(target=remove)
    worker.start()
    assert runtime.entered.wait(5)
    try:
        with pytest.raises(ConcurrentOperationError) as excinfo:
            orchestrator.stop('ethnode1')
        assert excinfo.value.operation == 'remove'
        assert orchestrator.plan('ethnode1', 'stop').allowed is False
    finally:
        runtime.release.set()
        worker.join(5)

    assert results['run'].ok
    assert registry.get('ethnode1') is None


def test_install_failure_rolls_back(orchestrator, registry, runtime, settings):
    runtime.fail['up'] = StartupError(['docker', 'compose', 'up'], 1, 'image not found')

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.install('ethnode', 'ethnode1')

    run = excinfo.value.run
    assert run.step('integrate').status == StepStatus.SKIPPED
    assert any('removed network ethnode1-net' in note for note in run.rollback)
    assert not (settings.services_root / 'ethnode1').exists()
    assert 'ethnode1-net' not in runtime.networks
    assert runtime.container_names() == []

    instance = registry.get('ethnode1')
    assert instance.status == ServiceStatus.FAILED
    assert 'start_services' in instance.last_error
    # Failed -> Installing is not an edge: the name must be removed first
    with pytest.raises(ServiceExistsError):
        orchestrator.install('ethnode', 'ethnode1')
    assert orchestrator.remove('ethnode1').ok


def test_install_rollback_keeps_shared_network_in_use(orchestrator, runtime):
    orchestrator.install('validator', 'validator1')
    runtime.fail['up'] = StartupError(['docker', 'compose', 'up'], 1, 'boom')

    with pytest.raises(CriticalStepFailure):
        orchestrator.install('validator', 'validator2')

    assert 'validator-net' in runtime.networks
    assert 'validator1' in runtime.containers


def test_install_into_existing_directory_does_not_touch_it(orchestrator, runtime, settings):
    legacy = settings.services_root / 'ethnode1'
    legacy.mkdir()
    (legacy / '.env').write_text('NETWORK=hoodi\n')

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.install('ethnode', 'ethnode1')

    assert excinfo.value.step == 'create_directories'
    assert (legacy / '.env').read_text() == 'NETWORK=hoodi\n'


def test_stop_and_start(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1', {'execution_client': 'nethermind', 'consensus_client': 'teku'})

    orchestrator.stop('ethnode1')
    assert registry.get('ethnode1').status == ServiceStatus.STOPPED
    assert runtime.containers['ethnode1-nethermind']['stop_timeout'] == 180
    assert runtime.containers['ethnode1-teku']['stop_timeout'] == 30

    run = orchestrator.start('ethnode1')
    assert [s.name for s in run.steps] == ['ensure_networks', 'start_services', 'health_check']
    assert registry.get('ethnode1').status == ServiceStatus.RUNNING


def test_start_running_service_is_a_no_op(orchestrator):
    orchestrator.install('ethnode', 'ethnode1')
    run = orchestrator.start('ethnode1')
    assert run.outcome == RunOutcome.SUCCEEDED
    assert run.steps == []


def test_start_unknown_service(orchestrator):
    with pytest.raises(UnknownServiceError):
        orchestrator.start('ghost')


def test_start_after_interrupted_install_is_rejected(orchestrator, registry):
    registry.register('ethnode1', 'ethnode')
    with pytest.raises(InvalidTransitionError):
        orchestrator.start('ethnode1')


def test_health_check_failure_marks_failed(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.stop('ethnode1')
    runtime.broken_generation = 0

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.start('ethnode1')

    assert excinfo.value.step == 'health_check'
    assert registry.get('ethnode1').status == ServiceStatus.FAILED


def test_update_pulls_and_recreates(orchestrator, registry, runtime, settings):
    orchestrator.install('ethnode', 'ethnode1')

    run = orchestrator.update('ethnode1')

    assert run.outcome == RunOutcome.SUCCEEDED
    assert runtime.containers['ethnode1-reth']['image'].endswith('#1')
    assert registry.get('ethnode1').metadata['image_ids']['execution'].endswith('#1')
    assert not (settings.services_root / 'ethnode1' / ROLLBACK_FILE).exists()


def test_update_health_failure_rolls_back_to_previous_images(orchestrator, registry, runtime, settings):
    orchestrator.install('ethnode', 'ethnode1')
    previous = runtime.service_images(settings.services_root / 'ethnode1')
    runtime.broken_generation = 1

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.update('ethnode1')

    assert excinfo.value.step == 'health_check'
    assert excinfo.value.run.rollback
    override = settings.services_root / 'ethnode1' / ROLLBACK_FILE
    assert override.exists()
    assert runtime.service_images(settings.services_root / 'ethnode1') == previous
    assert registry.get('ethnode1').status == ServiceStatus.FAILED

    # start honours the pinned images while the override exists
    assert orchestrator.start('ethnode1').ok
    assert runtime.service_images(settings.services_root / 'ethnode1') == previous

    runtime.broken_generation = None
    assert orchestrator.update('ethnode1').ok
    assert not override.exists()


def test_update_pull_failure_leaves_containers_alone(orchestrator, runtime, settings):
    orchestrator.install('ethnode', 'ethnode1')
    runtime.fail['pull'] = StartupError(['docker', 'compose', 'pull'], 1, 'rate limited')

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.update('ethnode1')

    assert excinfo.value.run.rollback == ['containers were not touched']
    assert not (settings.services_root / 'ethnode1' / ROLLBACK_FILE).exists()


def test_cancel_between_steps_leaves_failed(orchestrator, registry):
    def cancel_after_first_step(run, record):
        if record.name == 'create_directories':
            assert orchestrator.cancel('ethnode1')

    orchestrator.on_step = cancel_after_first_step

    with pytest.raises(RunCancelledError) as excinfo:
        orchestrator.install('ethnode', 'ethnode1')

    run = excinfo.value.run
    assert run.outcome == RunOutcome.CANCELLED
    assert run.last_completed_step == 'create_directories'
    assert all(s.status == StepStatus.SKIPPED for s in run.steps[1:])
    instance = registry.get('ethnode1')
    assert instance.status == ServiceStatus.FAILED
    assert instance.last_run['outcome'] == 'cancelled'


def test_cancel_without_run_in_flight(orchestrator):
    assert orchestrator.cancel('ethnode1') is False


def test_interactive_remove_declined(orchestrator, registry):
    orchestrator.install('ethnode', 'ethnode1')
    seen = []

    run = orchestrator.remove('ethnode1', interactive=True, confirm=lambda plan: seen.append(plan) or False)

    assert run.outcome == RunOutcome.DECLINED
    assert seen[0].operation == 'remove'
    assert registry.get('ethnode1').status == ServiceStatus.RUNNING


def test_plan_remove_lists_steps_and_sharing(orchestrator):
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode1']})
    orchestrator.install('validator', 'validator2', {'beacon_nodes': []})

    plan = orchestrator.plan('vero', Operation.REMOVE)

    assert plan.allowed
    assert [s.name for s in plan.steps][0] == 'stop_services'
    assert {s.name: s.critical for s in plan.steps}['update_dependents'] is False
    assert plan.shared_retained == ['validator-net', 'web3signer-net']
    assert plan.shared_released == []

    ethnode_plan = orchestrator.plan('ethnode1', 'remove')
    assert ethnode_plan.dependents == ['vero']
    assert 'dependent_config' in ethnode_plan.integrations


def test_plan_install_requires_type_for_unknown_name(orchestrator):
    plan = orchestrator.plan('ethnode7', 'install')
    assert plan.allowed is False

    plan = orchestrator.plan('ethnode7', 'install', service_type='ethnode')
    assert plan.allowed
    assert 'ethnode7-net' in [r.identifier for r in plan.resources.networks]


def test_status_reports_resources_and_last_run(orchestrator):
    orchestrator.install('ethnode', 'ethnode1')

    info = orchestrator.status('ethnode1')

    assert info['status'] == 'running'
    assert info['last_run']['outcome'] == 'succeeded'
    assert {'kind': 'network', 'identifier': 'ethnode1-net', 'shared': False, 'shared_with': []} in info['resources']
    assert orchestrator.status('ghost') == {'name': 'ghost', 'status': 'absent'}


def test_verify_marks_drift_as_failed(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.install('ethnode', 'ethnode2')
    for name in ('ethnode1-reth', 'ethnode1-lodestar'):
        del runtime.containers[name]

    findings = orchestrator.verify()

    assert findings == [{'name': 'ethnode1', 'status': 'failed', 'problem': 'no containers found'}]
    assert registry.get('ethnode1').status == ServiceStatus.FAILED
    assert registry.get('ethnode1').last_error == 'drift: no containers found'
    assert registry.get('ethnode2').status == ServiceStatus.RUNNING


def test_metrics_stack_tracks_ethnodes(orchestrator, runtime, settings, prometheus_reload):
    orchestrator.install('metrics', 'monitoring')
    orchestrator.install('ethnode', 'ethnode1', {'execution_client': 'besu', 'consensus_client': 'lighthouse'})

    config = (settings.services_root / 'monitoring' / 'prometheus.yml').read_text()
    assert 'ethnode1-besu:6060' in config
    assert 'ethnode1-lighthouse:5054' in config
    assert 'ethnode1-net' in runtime.containers['monitoring-prometheus']['networks']

    orchestrator.remove('ethnode1')

    config = (settings.services_root / 'monitoring' / 'prometheus.yml').read_text()
    assert 'ethnode1' not in config
    assert 'ethnode1-net' not in runtime.networks
    assert 'ethnode1-net' not in runtime.containers['monitoring-prometheus']['networks']


def test_remove_spares_hyphenated_sibling(orchestrator, registry, runtime, settings):
    """Removing 'node' must not touch the containers, volumes or endpoints of 'node-b'"""
    orchestrator.install('ethnode', 'node')
    orchestrator.install('ethnode', 'node-b', {'execution_client': 'geth'})
    orchestrator.install('validator', 'vero', {'beacon_nodes': ['node', 'node-b']})
    vero_env = settings.services_root / 'vero' / '.env'
    assert read_env(vero_env)['BEACON_NODE_URLS'] == 'http://node-lodestar:5052,http://node-b-lodestar:5052'

    run = orchestrator.remove('node')

    assert run.outcome == RunOutcome.SUCCEEDED
    assert runtime.container_names() == ['node-b-geth', 'node-b-lodestar', 'vero']
    assert runtime.volumes == {'node-b_el-data', 'node-b_cl-data'}
    assert read_env(vero_env)['BEACON_NODE_URLS'] == 'http://node-b-lodestar:5052'
    assert registry.get('node-b').status == ServiceStatus.RUNNING
    assert registry.get('vero').dependencies == ['node-b']
    assert 'node-b-net' in runtime.containers['vero']['networks']


def test_default_ethnodes_get_distinct_ports(orchestrator, registry, settings):
    first = orchestrator.install('ethnode', 'ethnode1')
    second = orchestrator.install('ethnode', 'ethnode2')

    assert first.ok and second.ok
    assert registry.get('ethnode1').metadata['ports'] == {'el_p2p': 30303, 'cl_p2p': 9000}
    assert registry.get('ethnode2').metadata['ports'] == {'el_p2p': 30304, 'cl_p2p': 9001}
    env = read_env(settings.services_root / 'ethnode2' / '.env')
    assert (env['EL_P2P_PORT'], env['CL_P2P_PORT']) == ('30304', '9001')
    assert orchestrator.ports.reserved('ethnode2') == {}


def test_ports_return_to_the_pool_on_remove(orchestrator, registry):
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.install('ethnode', 'ethnode2')

    run = orchestrator.remove('ethnode1')
    assert any('released ports 9000, 30303' in note for note in run.step('unregister').notes)

    orchestrator.install('ethnode', 'ethnode3')
    assert registry.get('ethnode3').metadata['ports'] == {'el_p2p': 30303, 'cl_p2p': 9000}


def test_ports_published_outside_the_registry_are_skipped(orchestrator, registry, runtime):
    runtime.containers['legacy-geth'] = {'project': 'legacy', 'service': 'geth', 'state': 'running',
                                         'image': 'geth', 'networks': set(), 'ports': {30303, 9000}}

    orchestrator.install('ethnode', 'ethnode1')

    assert registry.get('ethnode1').metadata['ports'] == {'el_p2p': 30304, 'cl_p2p': 9001}


def test_explicit_port_in_use_is_rejected(orchestrator, registry):
    orchestrator.install('ethnode', 'ethnode1')

    with pytest.raises(TemplateError, match='30303'):
        orchestrator.install('ethnode', 'ethnode2', {'el_p2p_port': 30303})

    assert registry.get('ethnode2') is None
    assert orchestrator.ports.reserved('ethnode2') == {}


def test_fixed_ports_clash_at_startup(registry, runtime, settings):
    """Without an allocator both nodes ask docker for 30303 and the second cannot start"""
    orchestrator = LifecycleOrchestrator(registry, runtime, settings, renderer=TemplateRenderer())
    orchestrator.install('ethnode', 'ethnode1')

    with pytest.raises(CriticalStepFailure) as excinfo:
        orchestrator.install('ethnode', 'ethnode2')

    assert excinfo.value.step == 'start_services'
    assert 'port is already allocated' in str(excinfo.value)
    assert registry.get('ethnode2').status == ServiceStatus.FAILED


class StopBlockingRuntime(FakeRuntime):
    """Blocks while stopping one container so another operation can run meanwhile"""

    def __init__(self, container):
        super().__init__()
        self.container = container
        self.entered = threading.Event()
        self.release = threading.Event()

    def stop(self, handles, timeout):
        if any(h.name == self.container for h in handles):
            self.entered.set()
            self.release.wait(5)
        return super().stop(handles, timeout)


def test_dependent_busy_with_another_operation_is_not_reconfigured(registry, settings):
    runtime = StopBlockingRuntime('vero')
    orchestrator = LifecycleOrchestrator(registry, runtime, settings)
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode1']})
    vero_env = settings.services_root / 'vero' / '.env'
    results = {}

    def stop_vero():
        results['stop'] = orchestrator.stop('vero')

    worker = threading.Thread(target=stop_vero)
    worker.start()
    assert runtime.entered.wait(5)
    try:
        run = orchestrator.remove('ethnode1')
    finally:
        runtime.release.set()
        worker.join(5)

    assert run.outcome == RunOutcome.COMPLETED_WITH_WARNINGS
    step = run.step('update_dependents')
    assert step.status == StepStatus.FAILED_NON_CRITICAL
    assert 'vero: not updated, stop in progress' in step.error
    assert [f.step for f in run.non_critical_failures] == ['update_dependents']
    assert registry.get('ethnode1') is None
    # The stop went ahead and nothing recreated vero behind its back
    assert results['stop'].ok
    assert registry.get('vero').status == ServiceStatus.STOPPED
    assert runtime.containers['vero']['state'] == 'exited'
    assert read_env(vero_env)['BEACON_NODE_URLS'] == 'http://ethnode1-lodestar:5052'


def test_dependent_stopped_meanwhile_is_not_restarted(orchestrator, registry, runtime):
    orchestrator.install('ethnode', 'ethnode1')
    orchestrator.install('validator', 'vero', {'beacon_nodes': ['ethnode1']})
    orchestrator.stop('vero')

    run = orchestrator.remove('ethnode1')

    assert run.step('update_dependents').status == StepStatus.SUCCEEDED
    assert registry.get('vero').status == ServiceStatus.STOPPED
    assert runtime.containers['vero']['state'] == 'exited'


class PinnedNetworkAdapter(SharedResourceAdapter):
    """Reports every shared network as still in use"""

    def __init__(self, *args):
        super().__init__(*args)
        self.checked = []

    def on_shared_resource_check(self, resource_id, exclude=None):
        self.checked.append((resource_id, exclude))
        return True


def test_shared_network_release_asks_the_adapter(registry, runtime, settings):
    adapter = PinnedNetworkAdapter(registry, runtime, settings)
    orchestrator = LifecycleOrchestrator(registry, runtime, settings,
                                         adapters={SHARED_RESOURCE_INTEGRATION: adapter})
    orchestrator.install('validator', 'validator1')

    run = orchestrator.remove('validator1')

    assert run.ok
    assert ('validator-net', 'validator1') in adapter.checked
    assert 'validator-net' in runtime.networks
    assert any('kept shared network validator-net' in n for n in run.step('remove_networks').notes)
