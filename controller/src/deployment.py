from __future__ import annotations

import copy

from kubernetes.client import (
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
)

from controller.src.models import Application
from controller.src.ownership import new_controller_ref


def deployment_labels(application: Application) -> dict[str, str]:
    return {"app": "nginx", "controller": application.name}


def new_deployment(application: Application) -> V1Deployment:
    """Build the Deployment managed by ``application`` from the fixed nginx template.

    The controller back-reference lets the API server garbage-collect the
    Deployment once its Application is deleted.
    """
    labels = deployment_labels(application)
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=application.deployment_name,
            namespace=application.namespace,
            owner_references=[new_controller_ref(application)],
        ),
        spec=V1DeploymentSpec(
            replicas=application.desired_replicas,
            selector=V1LabelSelector(match_labels=dict(labels)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels=dict(labels)),
                spec=V1PodSpec(
                    containers=[V1Container(name="nginx", image="nginx:latest")],
                ),
            ),
        ),
    )


def with_replicas(deployment: V1Deployment, replicas: int) -> V1Deployment:
    """Return a copy of a cached Deployment with only ``spec.replicas`` changed.

    The cached object is never mutated; the copy keeps its resourceVersion so
    the API server rejects the update if the Deployment changed meanwhile.
    """
    updated = copy.deepcopy(deployment)
    updated.spec.replicas = replicas
    return updated
