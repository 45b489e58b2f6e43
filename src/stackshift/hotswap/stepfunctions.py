"""Hotswap detector for Step Functions state machines."""

import asyncio
import json

from stackshift.aws.session import AwsSession
from stackshift.evaluate import TemplateEvaluator
from stackshift.hotswap.common import HotswapPropertyOverrides, classify_changes
from stackshift.models import ClassifiedChange, HotswappableChange, ResourceDifference


async def is_hotswappable_state_machine_change(
    logical_id: str,
    change: ResourceDifference,
    evaluator: TemplateEvaluator,
    overrides: HotswapPropertyOverrides | None = None,
) -> list[ClassifiedChange]:
    if change.new_resource_type != "AWS::StepFunctions::StateMachine":
        return []

    ret: list[ClassifiedChange] = []
    classified = classify_changes(change, ["Definition", "DefinitionString"])
    if classified.report_non_hotswappable_property_changes(ret):
        return ret
    if not classified.hotswappable_props:
        return ret

    name_in_template = (change.new_properties or {}).get("StateMachineName")
    if name_in_template:
        state_machine_arn = await evaluator.evaluate(
            {
                "Fn::Join": [
                    ":",
                    [
                        "arn",
                        {"Ref": "AWS::Partition"},
                        "states",
                        {"Ref": "AWS::Region"},
                        {"Ref": "AWS::AccountId"},
                        "stateMachine",
                        name_in_template,
                    ],
                ]
            }
        )
    else:
        state_machine_arn = await evaluator.find_physical_name_for(logical_id)

    state_machine_name = state_machine_arn.split(":")[6] if state_machine_arn else None

    async def apply(session: AwsSession) -> None:
        if not state_machine_arn:
            return
        new_props = change.new_properties or {}
        if "DefinitionString" in new_props:
            definition = await evaluator.evaluate(new_props["DefinitionString"])
        else:
            definition = json.dumps(await evaluator.evaluate(new_props.get("Definition")))
        await asyncio.to_thread(
            session.stepfunctions().update_state_machine,
            stateMachineArn=state_machine_arn,
            definition=definition,
        )

    ret.append(
        HotswappableChange(
            resource_type=change.new_resource_type,
            props_changed=classified.names_of_hotswappable_props,
            service="stepfunctions-service",
            resource_names=[f"{change.new_resource_type} '{state_machine_name}'"],
            apply=apply,
        )
    )
    return ret
