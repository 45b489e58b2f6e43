"""Hotswap detector for ECS task definitions and the services running them."""

import asyncio
import logging

from stackshift.aws.session import AwsSession
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.common import (
    HotswapPropertyOverrides,
    classify_changes,
    lower_case_first_character,
    report_non_hotswappable_change,
    transform_object_keys,
)
from stackshift.models import ClassifiedChange, HotswappableChange, ResourceDifference

logger = logging.getLogger(__name__)

# Maps whose keys are user data and keep their casing in the SDK request
TASK_DEFINITION_KEEP_CASE = {
    "ContainerDefinitions": {
        "DockerLabels": True,
        "FirelensConfiguration": {"Options": True},
        "LogConfiguration": {"Options": True},
    },
    "Volumes": {"DockerVolumeConfiguration": {"DriverOpts": True, "Labels": True}},
}


async def is_hotswappable_ecs_service_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    if change.new_resource_type != "AWS::ECS::TaskDefinition":
        return []

    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, ["ContainerDefinitions"])
    if classified.report_non_hotswappable_property_changes(ret):
        return ret

    # A task definition is only hotswapped through the services that run it
    references = evaluator.find_references_to(logical_id)
    service_refs = [r for r in references if r.type == "AWS::ECS::Service"]
    service_arns = []
    for service in service_refs:
        service_arn = await evaluator.find_physical_name_for(service.logical_id)
        if service_arn:
            service_arns.append(service_arn)

    if not service_arns:
        # Registering a new revision is still useful in hotswap-only mode
        report_non_hotswappable_change(
            ret, change, None, "No ECS services reference the changed task definition", hotswap_only_visible=False
        )
    for other in references:
        if other.type != "AWS::ECS::Service":
            report_non_hotswappable_change(
                ret,
                change,
                None,
                f"A resource '{other.logical_id}' with Type '{other.type}' that is not an ECS Service "
                f"was found referencing the changed TaskDefinition '{logical_id}'",
            )

    if not classified.hotswappable_props:
        return ret

    new_props = change.new_properties or {}
    family_name = await evaluator.establish_physical_name(logical_id, new_props.get("Family"))
    ecs_properties = (overrides or HotswapPropertyOverrides()).ecs_hotswap_properties

    async def apply(session: AwsSession) -> None:
        ecs = session.ecs()
        evaluated = await evaluator.evaluate(new_props)
        task_definition = transform_object_keys(evaluated, lower_case_first_character, TASK_DEFINITION_KEEP_CASE)
        # Tags are not part of the revision and were rejected above if they changed
        task_definition.pop("tags", None)
        registered = await asyncio.to_thread(ecs.register_task_definition, **task_definition)
        task_definition_arn = registered["taskDefinition"]["taskDefinitionArn"]

        deployment_configuration = {
            "minimumHealthyPercent": (
                ecs_properties.minimum_healthy_percent
                if ecs_properties.minimum_healthy_percent is not None
                else 0
            ),
        }
        if ecs_properties.maximum_healthy_percent is not None:
            deployment_configuration["maximumPercent"] = ecs_properties.maximum_healthy_percent

        async def redeploy(service_arn: str) -> None:
            # arn:aws:ecs:<region>:<account>:service/<cluster>/<service>
            cluster = service_arn.split("/")[1]
            update = await asyncio.to_thread(
                ecs.update_service,
                service=service_arn,
                cluster=cluster,
                taskDefinition=task_definition_arn,
                forceNewDeployment=True,
                deploymentConfiguration=deployment_configuration,
            )
            waiter = ecs.get_waiter("services_stable")
            await asyncio.to_thread(
                waiter.wait,
                cluster=update["service"]["clusterArn"],
                services=[service_arn],
            )

        await asyncio.gather(*(redeploy(arn) for arn in service_arns))

    ret.append(
        HotswappableChange(
            resource_type=change.new_resource_type,
            props_changed=classified.names_of_hotswappable_props,
            service="ecs-service",
            resource_names=[
                f"ECS Task Definition '{family_name}'",
                *(f"ECS Service '{arn.split('/')[2]}'" for arn in service_arns),
            ],
            apply=apply,
        )
    )
    return ret
