from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiClient,
    AppsV1Api,
    CoordinationV1Api,
    CoreV1Api,
    CustomObjectsApi,
    V1Deployment,
)
from kubernetes.config.config_exception import ConfigException

from controller.src.models import GROUP, PLURAL, VERSION

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    """Typed API clients for the two endpoints the controller talks to.

    ``apps``, ``core`` and ``coordination`` use the workload endpoint;
    ``custom_objects`` uses the Application endpoint, which may be a
    different kubeconfig.
    """

    apps: AppsV1Api
    core: CoreV1Api
    coordination: CoordinationV1Api
    custom_objects: CustomObjectsApi


def load_api_client(kubeconfig: str | None = None, master: str | None = None) -> ApiClient:
    """Return an API client for one endpoint.

    An explicit ``kubeconfig`` path wins. Otherwise in-cluster config is tried
    first (running inside a pod), falling back to the local kubeconfig for
    development. ``master`` overrides the server address from either source.
    """
    configuration = client.Configuration()
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config(client_configuration=configuration)
            LOGGER.info("Loaded local kubeconfig")

    if master:
        configuration.host = master
    return client.ApiClient(configuration)


def build_clients(
    workload_client: ApiClient, application_client: ApiClient | None = None
) -> KubeClients:
    """Return the typed API clients, reusing the workload endpoint when no second one is given."""
    return KubeClients(
        apps=client.AppsV1Api(workload_client),
        core=client.CoreV1Api(workload_client),
        coordination=client.CoordinationV1Api(workload_client),
        custom_objects=client.CustomObjectsApi(application_client or workload_client),
    )


def create_deployment(apps_api: AppsV1Api, deployment: V1Deployment) -> Any:
    return apps_api.create_namespaced_deployment(
        namespace=deployment.metadata.namespace,
        body=deployment,
    )


def update_deployment(apps_api: AppsV1Api, deployment: V1Deployment) -> Any:
    """Replace a Deployment, carrying its resourceVersion for optimistic concurrency."""
    return apps_api.replace_namespaced_deployment(
        name=deployment.metadata.name,
        namespace=deployment.metadata.namespace,
        body=deployment,
    )


def application_list_call(
    custom_api: CustomObjectsApi, namespace: str = ""
) -> tuple[Callable[..., Any], dict[str, Any]]:
    """Return the list function and its kwargs for Application objects.

    The API method is handed to ``watch.Watch.stream`` unwrapped,
    because the watch derives the response type from the method docstring.
    """
    if namespace:
        return custom_api.list_namespaced_custom_object, {
            "group": GROUP,
            "version": VERSION,
            "namespace": namespace,
            "plural": PLURAL,
        }
    return custom_api.list_cluster_custom_object, {
        "group": GROUP,
        "version": VERSION,
        "plural": PLURAL,
    }


def deployment_list_call(
    apps_api: AppsV1Api, namespace: str = ""
) -> tuple[Callable[..., Any], dict[str, Any]]:
    if namespace:
        return apps_api.list_namespaced_deployment, {"namespace": namespace}
    return apps_api.list_deployment_for_all_namespaces, {}


def replace_application_status(custom_api: CustomObjectsApi, body: dict[str, Any]) -> Any:
    """Write ``body`` through the ``status`` subresource; spec edits in ``body`` are ignored."""
    metadata = body["metadata"]
    return custom_api.replace_namespaced_custom_object_status(
        group=GROUP,
        version=VERSION,
        namespace=metadata["namespace"],
        plural=PLURAL,
        name=metadata["name"],
        body=body,
    )
