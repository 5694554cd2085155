"""Unit tests for components/stork.py - Stork component."""

import json

import pytest

from components.base import ComponentError
from components.stork import (
    ANNOTATION_STORK_CPU,
    ANNOTATION_STORK_SCHED_CPU,
    STORK_CHILDREN,
    STORK_CLUSTER_ROLE_RULES,
    StorkComponent,
)
from converge import CONTAINER_PATH, get_path
from fakes import K8S_VERSION, FakeDriver, load_testdata

NAMESPACE = "kube-test"
SCHEDULER_IMAGE = "gcr.io/google_containers/kube-scheduler-amd64:v1.11.0"


@pytest.fixture
def stork(store, recorder, driver):
    """Stork component wired to the fake store and driver."""
    component = StorkComponent(driver)
    component.initialize(store, K8S_VERSION, store.kinds, recorder)
    return component


@pytest.fixture
def pxd_stork(store, recorder):
    """Stork component for a driver that supplies PX_NAMESPACE."""
    driver = FakeDriver(
        stork_driver_name="pxd",
        stork_env=[{"name": "PX_NAMESPACE", "value": NAMESPACE}],
    )
    component = StorkComponent(driver)
    component.initialize(store, K8S_VERSION, store.kinds, recorder)
    return component


def stork_spec(**stork):
    return {"stork": {"enabled": True, "image": "osd/stork:test", **stork}}


def container(store, name):
    deployment = store.find("Deployment", name, NAMESPACE)
    return get_path(deployment, CONTAINER_PATH)


def warnings(store):
    return [e for e in store.events if e["type"] == "Warning"]


class TestIsEnabled:
    """Tests for StorkComponent.is_enabled."""

    def test_enabled(self, stork, cluster):
        assert stork.is_enabled(cluster)

    def test_disabled_flag(self, stork, make_cluster):
        cluster = make_cluster(spec={"stork": {"enabled": False, "image": "x"}})
        assert not stork.is_enabled(cluster)

    def test_no_stork_spec(self, stork, make_cluster):
        assert not stork.is_enabled(make_cluster(spec={"stork": None}))

    def test_cluster_being_deleted(self, stork, make_cluster):
        cluster = make_cluster(deletionTimestamp="2024-01-15T10:30:00Z")
        assert not stork.is_enabled(cluster)


class TestStorkInstall:
    """Tests for the objects created by a reconcile."""

    @pytest.mark.asyncio
    async def test_creates_every_child_with_owner(self, stork, store, cluster):
        """Test that all children exist and are owned by the cluster."""
        await stork.reconcile(cluster)

        for kind, name, namespaced in STORK_CHILDREN:
            obj = store.find(kind, name, NAMESPACE if namespaced else None)
            assert obj is not None, f"{kind} {name} missing"
            refs = obj["metadata"]["ownerReferences"]
            assert len(refs) == 1
            assert refs[0]["uid"] == cluster.metadata.uid
            assert refs[0]["kind"] == "StorageCluster"
            assert refs[0]["controller"] is True

    @pytest.mark.asyncio
    async def test_scheduler_policy_config_map(self, stork, store, cluster):
        """Test that the scheduler policy points at the Stork service."""
        await stork.reconcile(cluster)

        config_map = store.find("ConfigMap", "stork-config", NAMESPACE)
        policy = json.loads(config_map["data"]["policy.cfg"])
        assert policy == load_testdata("stork-scheduler-policy.yaml")

    @pytest.mark.asyncio
    async def test_rbac(self, stork, store, cluster):
        """Test cluster roles and their bindings."""
        await stork.reconcile(cluster)

        role = store.find("ClusterRole", "stork-role")
        assert role["rules"] == STORK_CLUSTER_ROLE_RULES
        sched_role = store.find("ClusterRole", "stork-scheduler-role")
        assert sched_role["rules"]

        binding = store.find("ClusterRoleBinding", "stork-role-binding")
        assert binding["roleRef"]["name"] == "stork-role"
        assert binding["subjects"] == [
            {"kind": "ServiceAccount", "name": "stork-account", "namespace": NAMESPACE}
        ]
        sched_binding = store.find("ClusterRoleBinding", "stork-scheduler-role-binding")
        assert sched_binding["roleRef"]["name"] == "stork-scheduler-role"
        assert sched_binding["subjects"][0]["name"] == "stork-scheduler-account"

    @pytest.mark.asyncio
    async def test_service_and_storage_class(self, stork, store, cluster):
        """Test the extender service and the snapshot storage class."""
        await stork.reconcile(cluster)

        service = store.find("Service", "stork-service", NAMESPACE)
        ports = {p["name"]: p["port"] for p in service["spec"]["ports"]}
        assert ports == {"extender": 8099, "webhook": 443}
        assert service["spec"]["selector"] == {"name": "stork"}

        storage_class = store.find("StorageClass", "stork-snapshot-sc")
        assert storage_class["provisioner"] == "stork-snapshot"

    @pytest.mark.asyncio
    async def test_stork_deployment(self, stork, store, cluster):
        """Test the Stork deployment defaults."""
        await stork.reconcile(cluster)

        deployment = store.find("Deployment", "stork", NAMESPACE)
        assert deployment["spec"]["replicas"] == 3
        pod_spec = deployment["spec"]["template"]["spec"]
        assert pod_spec["serviceAccountName"] == "stork-account"
        assert "imagePullSecrets" not in pod_spec

        stork_container = pod_spec["containers"][0]
        assert stork_container["image"] == "osd/stork:test"
        assert stork_container["imagePullPolicy"] == "Always"
        assert stork_container["command"] == [
            "/stork",
            "--driver=mock",
            "--health-monitor-interval=120",
            "--leader-elect=true",
            "--verbose=true",
        ]
        assert stork_container["resources"]["requests"]["cpu"] == "0.1"

    @pytest.mark.asyncio
    async def test_scheduler_deployment(self, stork, store, cluster):
        """Test the Stork scheduler deployment."""
        await stork.reconcile(cluster)

        deployment = store.find("Deployment", "stork-scheduler", NAMESPACE)
        assert deployment["spec"]["replicas"] == 3
        pod_spec = deployment["spec"]["template"]["spec"]
        assert pod_spec["serviceAccountName"] == "stork-scheduler-account"

        sched = pod_spec["containers"][0]
        assert sched["image"] == (
            "gcr.io/google_containers/kube-scheduler-amd64:v1.11.0"
        )
        assert sched["command"][0] == "/usr/local/bin/kube-scheduler"
        assert set(sched["command"][1:]) == {
            "--address=0.0.0.0",
            "--leader-elect=true",
            "--scheduler-name=stork",
            "--policy-configmap=stork-config",
            f"--policy-configmap-namespace={NAMESPACE}",
            "--lock-object-name=stork-scheduler",
        }
        assert sched["resources"]["requests"]["cpu"] == "0.1"


class TestStorkOverrides:
    """Tests for cluster-level overrides."""

    @pytest.mark.asyncio
    async def test_custom_registry(self, stork, store, make_cluster):
        """Test that a custom registry prefixes both images."""
        cluster = make_cluster(spec={"customImageRegistry": "test-registry:1111"})

        await stork.reconcile(cluster)

        assert container(store, "stork")["image"] == (
            "test-registry:1111/osd/stork:test"
        )
        assert container(store, "stork-scheduler")["image"] == (
            "test-registry:1111/gcr.io/google_containers/kube-scheduler-amd64:v1.11.0"
        )

    @pytest.mark.asyncio
    async def test_custom_repository(self, stork, store, make_cluster):
        """Test that a custom repository replaces the image path."""
        cluster = make_cluster(
            spec={"customImageRegistry": "test-registry:1111/test-repo"}
        )

        await stork.reconcile(cluster)

        assert container(store, "stork")["image"] == (
            "test-registry:1111/test-repo/stork:test"
        )
        assert container(store, "stork-scheduler")["image"] == (
            "test-registry:1111/test-repo/kube-scheduler-amd64:v1.11.0"
        )

    @pytest.mark.asyncio
    async def test_registry_change_rolls_images(self, stork, store, make_cluster):
        """Test that changing the registry updates existing deployments."""
        await stork.reconcile(make_cluster())
        cluster = make_cluster(spec={"customImageRegistry": "test-registry:1111"})

        await stork.reconcile(cluster)

        assert container(store, "stork")["image"] == (
            "test-registry:1111/osd/stork:test"
        )

    @pytest.mark.asyncio
    async def test_image_pull_secret_and_policy(self, stork, store, make_cluster):
        """Test that the pull secret and policy reach both deployments."""
        cluster = make_cluster(
            spec={"imagePullSecret": "regcred", "imagePullPolicy": "IfNotPresent"}
        )

        await stork.reconcile(cluster)

        for name in ("stork", "stork-scheduler"):
            deployment = store.find("Deployment", name, NAMESPACE)
            pod_spec = deployment["spec"]["template"]["spec"]
            assert pod_spec["imagePullSecrets"] == [{"name": "regcred"}]
            assert pod_spec["containers"][0]["imagePullPolicy"] == "IfNotPresent"

    @pytest.mark.asyncio
    async def test_removing_pull_secret(self, stork, store, make_cluster):
        """Test that dropping the pull secret removes it from the deployment."""
        await stork.reconcile(make_cluster(spec={"imagePullSecret": "regcred"}))

        await stork.reconcile(make_cluster())

        deployment = store.find("Deployment", "stork", NAMESPACE)
        assert "imagePullSecrets" not in deployment["spec"]["template"]["spec"]

    @pytest.mark.asyncio
    async def test_user_args_override_defaults(self, stork, store, make_cluster):
        """Test that user arguments replace and extend the defaults."""
        cluster = make_cluster(
            spec={
                "stork": {
                    "enabled": True,
                    "image": "osd/stork:test",
                    "args": {"verbose": "false", "test-key": "test-value"},
                }
            }
        )

        await stork.reconcile(cluster)

        command = container(store, "stork")["command"]
        assert len(command) == 6
        assert "--verbose=false" in command
        assert "--verbose=true" not in command
        assert "--test-key=test-value" in command

    @pytest.mark.asyncio
    async def test_env_merge(self, store, recorder, make_cluster):
        """Test that driver env comes first and user env overrides it."""
        driver = FakeDriver(
            stork_driver_name="pxd",
            stork_env=[
                {"name": "PX_NAMESPACE", "value": NAMESPACE},
                {"name": "PX_SERVICE", "value": "portworx-service"},
            ],
        )
        stork = StorkComponent(driver)
        stork.initialize(store, K8S_VERSION, store.kinds, recorder)
        cluster = make_cluster(
            spec={
                "stork": {
                    "enabled": True,
                    "image": "osd/stork:test",
                    "env": [
                        {"name": "PX_SERVICE", "value": "custom-service"},
                        {"name": "FOO", "value": "bar"},
                    ],
                }
            }
        )

        await stork.reconcile(cluster)

        stork_container = container(store, "stork")
        assert stork_container["env"] == [
            {"name": "PX_NAMESPACE", "value": NAMESPACE},
            {"name": "PX_SERVICE", "value": "custom-service"},
            {"name": "FOO", "value": "bar"},
        ]
        assert "--driver=pxd" in stork_container["command"]


class TestStorkCPU:
    """Tests for the CPU override annotations."""

    @pytest.mark.asyncio
    async def test_valid_annotations(self, stork, store, make_cluster):
        """Test that valid annotations set the CPU requests."""
        cluster = make_cluster(
            annotations={
                ANNOTATION_STORK_CPU: "0.2",
                ANNOTATION_STORK_SCHED_CPU: "300m",
            }
        )

        await stork.reconcile(cluster)

        assert container(store, "stork")["resources"]["requests"]["cpu"] == "0.2"
        assert (
            container(store, "stork-scheduler")["resources"]["requests"]["cpu"]
            == "300m"
        )

    @pytest.mark.asyncio
    async def test_invalid_annotation_uses_default(self, stork, store, make_cluster):
        """Test that an invalid annotation warns and falls back to the default."""
        cluster = make_cluster(annotations={ANNOTATION_STORK_CPU: "invalid-cpu"})

        await stork.reconcile(cluster)

        assert container(store, "stork")["resources"]["requests"]["cpu"] == "0.1"
        events = warnings(store)
        assert len(events) == 1
        assert events[0]["reason"] == "FailedComponent"
        assert events[0]["message"].startswith("Failed to setup Stork.")

    @pytest.mark.asyncio
    async def test_invalid_annotation_keeps_live_value(
        self, stork, store, make_cluster
    ):
        """Test that an invalid annotation keeps the running CPU request."""
        await stork.reconcile(make_cluster(annotations={ANNOTATION_STORK_CPU: "0.2"}))

        await stork.reconcile(
            make_cluster(annotations={ANNOTATION_STORK_CPU: "invalid-cpu"})
        )

        assert container(store, "stork")["resources"]["requests"]["cpu"] == "0.2"

    @pytest.mark.asyncio
    async def test_one_warning_per_reconcile(self, stork, store, make_cluster):
        """Test that an invalid annotation warns once on every reconcile."""
        cluster = make_cluster(annotations={ANNOTATION_STORK_SCHED_CPU: "lots"})

        await stork.reconcile(cluster)
        await stork.reconcile(cluster)

        assert len(warnings(store)) == 2


class TestStorkConvergence:
    """Tests for idempotence and drift healing."""

    @pytest.mark.asyncio
    async def test_second_reconcile_writes_nothing(self, stork, store, cluster):
        """Test that reconciling an unchanged cluster performs no writes."""
        await stork.reconcile(cluster)
        store.clear_writes()

        await stork.reconcile(cluster)

        assert store.child_writes == []

    @pytest.mark.asyncio
    async def test_heals_modified_deployment(self, stork, store, cluster):
        """Test that an out-of-band image change is reverted."""
        await stork.reconcile(cluster)
        live = store.find("Deployment", "stork", NAMESPACE)
        live["spec"]["template"]["spec"]["containers"][0]["image"] = "evil:1"
        store.put(live)

        await stork.reconcile(cluster)

        assert container(store, "stork")["image"] == "osd/stork:test"

    @pytest.mark.asyncio
    async def test_recreates_deleted_child(self, stork, store, cluster):
        """Test that a child deleted out of band comes back."""
        await stork.reconcile(cluster)
        await store.delete("Service", "stork-service", NAMESPACE)

        await stork.reconcile(cluster)

        assert store.find("Service", "stork-service", NAMESPACE) is not None

    @pytest.mark.asyncio
    async def test_heals_modified_rules(self, stork, store, cluster):
        """Test that edited cluster role rules are restored."""
        await stork.reconcile(cluster)
        role = store.find("ClusterRole", "stork-role")
        role["rules"] = []
        store.put(role)

        await stork.reconcile(cluster)

        assert store.find("ClusterRole", "stork-role")["rules"] == (
            STORK_CLUSTER_ROLE_RULES
        )

    @pytest.mark.asyncio
    async def test_restores_modified_command(self, stork, store, cluster):
        """Test that an out-of-band command change is reverted exactly."""
        await stork.reconcile(cluster)
        expected = container(store, "stork")["command"]
        live = store.find("Deployment", "stork", NAMESPACE)
        live["spec"]["template"]["spec"]["containers"][0]["command"] = ["/bin/sh"]
        store.put(live)

        await stork.reconcile(cluster)

        assert container(store, "stork")["command"] == expected

    @pytest.mark.asyncio
    async def test_scheduler_image_rollback(self, pxd_stork, store, make_cluster):
        """Test that a changed scheduler image is rolled back."""
        cluster = make_cluster(spec=stork_spec(args={"test-key": "test-value"}))
        await pxd_stork.reconcile(cluster)
        assert container(store, "stork-scheduler")["image"] == SCHEDULER_IMAGE
        live = store.find("Deployment", "stork-scheduler", NAMESPACE)
        live["spec"]["template"]["spec"]["containers"][0]["image"] = "foo/bar:v1"
        store.put(live)

        await pxd_stork.reconcile(cluster)

        assert container(store, "stork-scheduler")["image"] == SCHEDULER_IMAGE

    @pytest.mark.asyncio
    async def test_scheduler_command_rollback(self, pxd_stork, store, make_cluster):
        """Test that an extra scheduler argument added out of band is removed."""
        cluster = make_cluster(spec=stork_spec(args={"test-key": "test-value"}))
        await pxd_stork.reconcile(cluster)
        expected = container(store, "stork-scheduler")["command"]
        live = store.find("Deployment", "stork-scheduler", NAMESPACE)
        live["spec"]["template"]["spec"]["containers"][0]["command"] = expected + [
            "--new-arg=test"
        ]
        store.put(live)

        await pxd_stork.reconcile(cluster)

        assert container(store, "stork-scheduler")["command"] == expected


class TestStorkSpecChanges:
    """Tests for spec changes between reconciles."""

    @pytest.mark.asyncio
    async def test_env_changes(self, pxd_stork, store, make_cluster):
        """Test that user env updates keep the driver env and never duplicate."""
        await pxd_stork.reconcile(
            make_cluster(spec=stork_spec(env=[{"name": "FOO", "value": "foo"}]))
        )
        assert container(store, "stork")["env"] == [
            {"name": "PX_NAMESPACE", "value": NAMESPACE},
            {"name": "FOO", "value": "foo"},
        ]

        await pxd_stork.reconcile(
            make_cluster(spec=stork_spec(env=[{"name": "FOO", "value": "bar"}]))
        )
        assert container(store, "stork")["env"] == [
            {"name": "PX_NAMESPACE", "value": NAMESPACE},
            {"name": "FOO", "value": "bar"},
        ]

        await pxd_stork.reconcile(
            make_cluster(
                spec=stork_spec(
                    env=[
                        {"name": "FOO", "value": "bar"},
                        {"name": "BAZ", "value": "baz"},
                    ]
                )
            )
        )
        env = container(store, "stork")["env"]
        assert env == [
            {"name": "PX_NAMESPACE", "value": NAMESPACE},
            {"name": "FOO", "value": "bar"},
            {"name": "BAZ", "value": "baz"},
        ]
        assert len({e["name"] for e in env}) == len(env)

    @pytest.mark.asyncio
    async def test_args_changes(self, pxd_stork, store, make_cluster):
        """Test that overriding a default argument changes only that token."""
        await pxd_stork.reconcile(
            make_cluster(spec=stork_spec(args={"test-key": "test-value"}))
        )
        before = container(store, "stork")["command"]
        assert "--verbose=true" in before
        assert "--test-key=test-value" in before

        await pxd_stork.reconcile(
            make_cluster(
                spec=stork_spec(args={"test-key": "test-value", "verbose": "false"})
            )
        )

        after = container(store, "stork")["command"]
        assert len(after) == len(before) == 6
        changed = [(b, a) for b, a in zip(before, after) if b != a]
        assert changed == [("--verbose=true", "--verbose=false")]


class TestStorkFailures:
    """Tests for soft and hard failures."""

    @pytest.mark.asyncio
    async def test_empty_image(self, stork, store, make_cluster):
        """Test that an empty image is reported and nothing is created."""
        cluster = make_cluster(spec={"stork": {"enabled": True, "image": ""}})

        await stork.reconcile(cluster)

        assert store.child_writes == []
        events = warnings(store)
        assert len(events) == 1
        assert events[0]["message"] == (
            "Failed to setup Stork. stork image cannot be empty"
        )

    @pytest.mark.asyncio
    async def test_store_failure_is_recoverable(self, stork, store, cluster):
        """Test that a store failure surfaces as a recoverable error."""
        store.fail("create", "Deployment")

        with pytest.raises(ComponentError) as exc_info:
            await stork.reconcile(cluster)

        assert not exc_info.value.critical

    @pytest.mark.asyncio
    async def test_driver_without_stork_removes_children(
        self, store, recorder, cluster
    ):
        """Test that a driver without Stork support removes everything."""
        supported = StorkComponent(FakeDriver())
        supported.initialize(store, K8S_VERSION, store.kinds, recorder)
        await supported.reconcile(cluster)

        unsupported = StorkComponent(FakeDriver(stork_driver_name=None))
        unsupported.initialize(store, K8S_VERSION, store.kinds, recorder)
        await unsupported.reconcile(cluster)

        for kind, name, namespaced in STORK_CHILDREN:
            assert store.find(kind, name, NAMESPACE if namespaced else None) is None


class TestStorkDelete:
    """Tests for StorkComponent.delete."""

    @pytest.mark.asyncio
    async def test_removes_every_child(self, stork, store, cluster):
        """Test that disabling Stork removes all of its children."""
        await stork.reconcile(cluster)

        await stork.delete(cluster)

        assert [w for w in store.child_writes if w[0] == "delete"]
        for kind, name, namespaced in STORK_CHILDREN:
            assert store.find(kind, name, NAMESPACE if namespaced else None) is None

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, stork, store, cluster):
        """Test that deleting when nothing exists writes nothing."""
        await stork.delete(cluster)

        assert store.writes == []
