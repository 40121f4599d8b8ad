from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kubernetes.client import V1Deployment, V1ObjectMeta

from controller.src.kube import (
    application_list_call,
    build_clients,
    create_deployment,
    deployment_list_call,
    load_api_client,
    replace_application_status,
    update_deployment,
)


def _deployment() -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(name="web", namespace="apps", resource_version="7"),
    )


def test_load_api_client_in_cluster() -> None:
    with (
        patch("controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_api_client()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_api_client_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "controller.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_api_client()

    mock_kubeconfig.assert_called_once()


def test_load_api_client_explicit_kubeconfig_skips_in_cluster() -> None:
    with (
        patch("controller.src.kube.config.load_incluster_config") as mock_incluster,
        patch("controller.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_api_client(kubeconfig="/tmp/kubeconfig")

    mock_incluster.assert_not_called()
    assert mock_kubeconfig.call_args.kwargs["config_file"] == "/tmp/kubeconfig"


def test_load_api_client_master_overrides_host() -> None:
    with patch("controller.src.kube.config.load_incluster_config"):
        api_client = load_api_client(master="https://10.0.0.1:6443")

    assert api_client.configuration.host == "https://10.0.0.1:6443"


def test_build_clients_uses_application_endpoint_for_custom_objects() -> None:
    workload = SimpleNamespace(name="workload")
    applications = SimpleNamespace(name="applications")
    with patch("controller.src.kube.client") as mock_client:
        build_clients(workload, applications)

    mock_client.AppsV1Api.assert_called_once_with(workload)
    mock_client.CoreV1Api.assert_called_once_with(workload)
    mock_client.CoordinationV1Api.assert_called_once_with(workload)
    mock_client.CustomObjectsApi.assert_called_once_with(applications)


def test_build_clients_defaults_to_workload_endpoint() -> None:
    workload = SimpleNamespace(name="workload")
    with patch("controller.src.kube.client") as mock_client:
        build_clients(workload)

    mock_client.CustomObjectsApi.assert_called_once_with(workload)


def test_create_deployment_targets_deployment_namespace() -> None:
    apps_api = MagicMock()
    deployment = _deployment()

    create_deployment(apps_api, deployment)

    apps_api.create_namespaced_deployment.assert_called_once_with(
        namespace="apps", body=deployment
    )


def test_update_deployment_replaces_by_name() -> None:
    apps_api = MagicMock()
    deployment = _deployment()

    update_deployment(apps_api, deployment)

    call_kwargs = apps_api.replace_namespaced_deployment.call_args.kwargs
    assert call_kwargs["name"] == "web"
    assert call_kwargs["namespace"] == "apps"
    assert call_kwargs["body"].metadata.resource_version == "7"


def test_application_list_call_namespaced() -> None:
    custom_api = MagicMock()

    list_fn, kwargs = application_list_call(custom_api, "apps")

    assert list_fn is custom_api.list_namespaced_custom_object
    assert kwargs == {
        "group": "source.kubesrun.top",
        "version": "v1alpha1",
        "namespace": "apps",
        "plural": "applications",
    }


def test_application_list_call_all_namespaces() -> None:
    custom_api = MagicMock()

    list_fn, kwargs = application_list_call(custom_api)

    assert list_fn is custom_api.list_cluster_custom_object
    assert "namespace" not in kwargs


def test_deployment_list_call() -> None:
    apps_api = MagicMock()

    assert deployment_list_call(apps_api, "apps") == (
        apps_api.list_namespaced_deployment,
        {"namespace": "apps"},
    )
    assert deployment_list_call(apps_api) == (apps_api.list_deployment_for_all_namespaces, {})


def test_replace_application_status_uses_status_subresource() -> None:
    custom_api = MagicMock()
    body = {"metadata": {"name": "demo", "namespace": "apps"}, "status": {"availableReplicas": 1}}

    replace_application_status(custom_api, body)

    custom_api.replace_namespaced_custom_object_status.assert_called_once_with(
        group="source.kubesrun.top",
        version="v1alpha1",
        namespace="apps",
        plural="applications",
        name="demo",
        body=body,
    )
