"""Start/stop of the spot instance against the in-memory AWS fake."""

import asyncio
from dataclasses import replace

import pytest
from botocore.exceptions import ClientError

from cloudrig.errors import CloudrigError, PollCancelledError, PollTimeoutError, PreconditionError
from cloudrig.lifecycle import LifecycleController, LifecycleState
from cloudrig.wait import CancelToken

from tests.fakes import SpotRequest, client_error

pytestmark = [pytest.mark.unit]


class TestGetState:
    @pytest.mark.asyncio
    async def test_idle_account(self, aws, context):
        state = await LifecycleController(context).get_state()
        assert state.idle
        assert state.active_instance is None

    @pytest.mark.asyncio
    async def test_groups_owned_instances_by_state(self, aws, context):
        running = aws.add_instance("running")
        shutting = aws.add_instance("shutting-down")
        aws.add_instance("running", owned=False)
        aws.add_instance("terminated")

        state = await LifecycleController(context).get_state()

        assert [i["InstanceId"] for i in state.active] == [running]
        assert [i["InstanceId"] for i in state.shutting_down] == [shutting]
        assert not state.idle

    @pytest.mark.asyncio
    async def test_public_dns(self, aws, context):
        instance_id = aws.add_instance("running")
        assert await LifecycleController(context).public_dns() == f"{instance_id}.compute.amazonaws.com"

    @pytest.mark.asyncio
    async def test_public_dns_without_instance(self, aws, context):
        with pytest.raises(PreconditionError, match="no instance running"):
            await LifecycleController(context).public_dns()


class TestStart:
    @pytest.mark.asyncio
    async def test_start_then_stop_returns_to_idle(self, aws, ready_context):
        controller = LifecycleController(ready_context)

        handle = await controller.start()
        instance_id = await handle

        assert controller.state is LifecycleState.RUNNING
        state = await controller.get_state()
        assert [i["InstanceId"] for i in state.active] == [instance_id]

        stopped = await controller.stop()

        assert stopped == instance_id
        assert controller.state is LifecycleState.ABSENT
        assert (await controller.get_state()).idle

    @pytest.mark.asyncio
    async def test_start_returns_before_fulfillment(self, aws, ready_context):
        aws.fulfill_after = 3
        controller = LifecycleController(ready_context)

        handle = await controller.start()

        assert controller.state is LifecycleState.REQUEST_SUBMITTED
        assert not handle.done
        assert handle.request_id in aws.spot_requests
        await handle

    @pytest.mark.asyncio
    async def test_request_parameters(self, aws, ready_context):
        handle = await LifecycleController(ready_context).start()
        await handle

        config = aws.spot_requests[handle.request_id].config
        spec = config["LaunchSpecifications"][0]
        settings = ready_context.settings
        assert config["IamFleetRole"] == settings.fleet_role_arn
        assert config["SpotPrice"] == "0.4"
        assert config["TargetCapacity"] == 1
        assert config["Type"] == "request"
        assert spec["ImageId"] == settings.image_id
        assert spec["InstanceType"] == "g2.2xlarge"
        assert spec["KeyName"] == "cloudrig"
        assert spec["IamInstanceProfile"] == {"Arn": settings.ssm_instance_profile_arn}
        assert spec["SecurityGroups"] == [{"GroupId": settings.security_group_id}]

    @pytest.mark.asyncio
    async def test_instance_is_tagged_before_it_counts_as_active(self, aws, ready_context):
        handle = await LifecycleController(ready_context).start()
        instance_id = await handle

        ops = aws.ops("ec2")
        tagged_at = ops.index("create_tags")
        assert "describe_instances" not in ops[:tagged_at]
        assert "describe_instances" in ops[tagged_at:]
        assert {"Key": "cloudrig", "Value": "true"} in aws.instances[instance_id]["Tags"]

    @pytest.mark.asyncio
    async def test_on_ready_receives_instance_id(self, aws, ready_context):
        seen = []

        async def on_ready(instance_id):
            seen.append(instance_id)

        handle = await LifecycleController(ready_context).start(on_ready)
        instance_id = await handle

        assert seen == [instance_id]

    @pytest.mark.asyncio
    async def test_sync_callback(self, aws, ready_context):
        seen = []
        handle = await LifecycleController(ready_context).start(seen.append)
        assert seen == [await handle]

    @pytest.mark.asyncio
    async def test_waits_for_health_checks(self, aws, ready_context):
        handle = await LifecycleController(ready_context).start()
        await handle
        assert "wait:instance_status_ok" in aws.ops("ec2")

    @pytest.mark.asyncio
    async def test_missing_settings(self, aws, context):
        with pytest.raises(PreconditionError, match="run setup first"):
            await LifecycleController(context).start()
        assert aws.mutations() == []

    @pytest.mark.asyncio
    async def test_request_failure(self, aws, ready_context):
        aws.fail["request_spot_fleet"] = client_error("MaxSpotFleetRequestCountExceeded", "RequestSpotFleet")
        controller = LifecycleController(ready_context)

        with pytest.raises(ClientError, match="MaxSpotFleetRequestCountExceeded"):
            await controller.start()
        assert controller.state is LifecycleState.ABSENT

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_fulfillment(self, aws, ready_context, config):
        aws.fulfill_after = 10**6
        ready_context.config = replace(config, poll_interval=3600)
        controller = LifecycleController(ready_context)

        handle = await controller.start()
        await asyncio.sleep(0.01)
        handle.cancel()

        with pytest.raises(PollCancelledError):
            await asyncio.wait_for(handle.wait(), timeout=1)
        assert controller.state is LifecycleState.ABSENT
        assert aws.spot_requests[handle.request_id].cancelled

    @pytest.mark.asyncio
    async def test_external_token(self, aws, ready_context):
        aws.fulfill_after = 10**6
        token = CancelToken()
        handle = await LifecycleController(ready_context).start(cancel=token)

        assert handle.token is token
        token.cancel()
        with pytest.raises(PollCancelledError):
            await handle
        assert aws.spot_requests[handle.request_id].cancelled

    @pytest.mark.asyncio
    async def test_start_timeout(self, aws, ready_context, config):
        aws.fulfill_after = 10**6
        ready_context.config = replace(config, start_timeout=0.05, poll_interval=0.01)

        handle = await LifecycleController(ready_context).start()

        with pytest.raises(PollTimeoutError):
            await handle
        _, _, kwargs = next(c for c in aws.calls if c[1] == "cancel_spot_fleet_requests")
        assert kwargs == {"SpotFleetRequestIds": [handle.request_id], "TerminateInstances": True}
        assert aws.spot_requests[handle.request_id].cancelled

    @pytest.mark.asyncio
    async def test_abort_after_tagging_leaves_request_for_stop(self, aws, ready_context):
        aws.boot_after = 10**6
        controller = LifecycleController(ready_context)
        handle = await controller.start()

        while controller.state is not LifecycleState.AWAITING_RUNNING:
            await asyncio.sleep(0)
        handle.cancel()

        with pytest.raises(PollCancelledError):
            await handle
        assert "cancel_spot_fleet_requests" not in aws.ops()
        assert controller.state is LifecycleState.AWAITING_RUNNING

    @pytest.mark.asyncio
    async def test_late_fulfillment_after_abort_launches_nothing(self, aws, ready_context):
        aws.fulfill_after = 10**6
        handle = await LifecycleController(ready_context).start()
        handle.cancel()
        with pytest.raises(PollCancelledError):
            await handle

        request = aws.spot_requests[handle.request_id]
        request.polls_until_fulfilled = 0
        async with ready_context.ec2() as ec2:
            resp = await ec2.describe_spot_fleet_instances(SpotFleetRequestId=handle.request_id)

        assert resp["ActiveInstances"] == []
        assert aws.instances == {}


class TestStop:
    @pytest.mark.asyncio
    async def test_no_instance_issues_no_mutations(self, aws, context):
        with pytest.raises(PreconditionError, match="no instance running"):
            await LifecycleController(context).stop()
        assert aws.mutations() == []

    @pytest.mark.asyncio
    async def test_missing_fleet_tag(self, aws, context):
        aws.add_instance("running")

        with pytest.raises(PreconditionError, match="spot fleet request tag"):
            await LifecycleController(context).stop()
        assert aws.mutations() == []

    @pytest.mark.asyncio
    async def test_cancels_the_originating_request(self, aws, context):
        instance_id = aws.add_instance("running", request_id="sfr-origin")
        aws.spot_requests["sfr-origin"] = SpotRequest(
            request_id="sfr-origin", config={}, polls_until_fulfilled=0, instance_id=instance_id,
        )
        stopped = []

        await LifecycleController(context).stop(lambda: stopped.append(True))

        _, _, kwargs = next(c for c in aws.calls if c[1] == "cancel_spot_fleet_requests")
        assert kwargs == {"SpotFleetRequestIds": ["sfr-origin"], "TerminateInstances": True}
        assert aws.instances[instance_id]["State"]["Name"] == "terminated"
        assert stopped == [True]

    @pytest.mark.asyncio
    async def test_unsuccessful_cancellation(self, aws, context):
        aws.add_instance("running", request_id="sfr-gone")

        with pytest.raises(CloudrigError, match="fleetRequestIdDoesNotExist"):
            await LifecycleController(context).stop()
        assert "wait:instance_terminated" not in aws.ops()
