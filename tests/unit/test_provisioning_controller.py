# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the provisioning controller lifecycle.
"""
import logging
import re
import threading
import time

import pytest

from kec.errors import (
    FailureKind,
    PolicyRejected,
    ProvisioningFailed,
    ReadinessTimeout,
    StartFailed,
)
from kec.MANAGERS.identity import IdentityLookupError, IdentitySource
from kec.MANAGERS.provisioning_controller import (
    ControllerState,
    ProvisioningController,
    Teardown,
    generate_container_name,
)
from kec.MANAGERS.status_monitor import ARCHITECTURE_HINT, RESOURCE_HINT
from kec.MANAGERS.workload_client import ClusterError
from kec.MODELS.container_status import ContainerState
from kec.MODELS.policy_config import PolicyConfig
from kec.RULES.container_image_rule import ContainerImageRule
from kec.RULES.policy_rule import Action

ALLOW_ALL = PolicyConfig(clouds={"kubernetes": ()}, global_rules=(ContainerImageRule(),))

RUNNING = {"state": ContainerState.RUNNING}
CREATING = {"state": ContainerState.WAITING, "reason": "ContainerCreating"}
START_ERROR = {"state": ContainerState.TERMINATED, "reason": "StartError", "message": "exec format", "exit_code": 128}

NAME_PATTERN = re.compile(r"^step-[0-9a-f]{8}-[bcdfghjklmnpqrstvwxz2456789]{5}$")


class StaticIdentity(IdentitySource):
    def __init__(self, ids=None, error=None):
        self.ids = ids
        self.error = error
        self.calls = 0

    def lookup(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.ids


@pytest.fixture
def make_controller(settings, metrics):
    def factory(context, workload_client, policy=ALLOW_ALL, **kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("metrics", metrics)
        return ProvisioningController(context, workload_client, policy, **kwargs)
    return factory


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


class TestLifecycle:

    def test_run_success(self, make_context, make_controller, fake_client, metrics):
        seen = []
        context = make_context(body=seen.append)
        controller = make_controller(context, fake_client)

        controller.run()

        name = fake_client.added_names[0]
        assert NAME_PATTERN.match(name)
        assert seen[0]["POD_CONTAINER"] == name
        assert fake_client.stop_counts == {name: 1}
        assert fake_client.execs[-1] == (name, ["touch", f"/tmp/{name}-step-is-done-monitor"])
        assert all(session.closed for session in fake_client.sessions)
        assert controller.state == ControllerState.TERMINATED

        assert context.lines[0] == f"Starting ephemeral container {name} with image maven:3"
        assert context.lines[1] == f"Ephemeral container {name} ready after 0 seconds"

        assert metrics.value("created_total", cloud="kubernetes") == 1
        assert metrics.value("creation_duration_seconds_count", cloud="kubernetes") == 1
        assert metrics.value("creation_wait_duration_seconds_count", cloud="kubernetes") == 1

    def test_spec_uses_primary_container(self, make_context, make_controller, fake_client):
        make_controller(make_context(command=("mvn",)), fake_client).run()
        container = fake_client.added[0]
        assert container.working_dir == "/home/agent"
        assert container.command == ["mvn"]
        assert container.args[0:2] == ["sh", "-c"]

    def test_body_failure_propagates_after_teardown(self, make_context, make_controller, fake_client):
        def body(env):
            raise RuntimeError("script failed")

        controller = make_controller(make_context(body=body), fake_client)
        with pytest.raises(RuntimeError, match="script failed"):
            controller.run()

        assert fake_client.stop_counts == {fake_client.added_names[0]: 1}

    def test_container_name_length(self):
        name = generate_container_name("X" * 100, "0123abcd")
        assert len(name) == 63
        assert name.startswith("xxx")
        assert re.search(r"-0123abcd-[bcdfghjklmnpqrstvwxz2456789]{5}$", name)


class TestPolicy:

    def test_rejected_request_never_contacts_cluster(self, make_context, make_controller, fake_client, metrics):
        policy = PolicyConfig(clouds={"kubernetes": (ContainerImageRule("*/maven", Action.REJECT),)})
        controller = make_controller(make_context(image="maven"), fake_client, policy=policy)

        with pytest.raises(PolicyRejected) as exc_info:
            controller.run()

        assert str(exc_info.value) == "Image 'maven' has been disallowed by administrators."
        assert fake_client.patch_calls == 0
        assert fake_client.status_reads == 0
        assert metrics.value("creation_failed_total", cloud="kubernetes", kind="policy-rejected") == 1

    def test_cloud_without_ephemeral_containers(self, make_context, make_controller, fake_client):
        controller = make_controller(make_context(), fake_client, policy=PolicyConfig())
        with pytest.raises(PolicyRejected, match="Ephemeral containers not enabled on kubernetes"):
            controller.run()
        assert fake_client.patch_calls == 0

    def test_cloud_rules_run_before_global_rules(self, make_context, make_controller, fake_client):
        policy = PolicyConfig(
            clouds={"kubernetes": (ContainerImageRule("*/node", Action.ALLOW),)},
            global_rules=(ContainerImageRule("*", Action.ALLOW),),
        )
        with pytest.raises(PolicyRejected, match="not in allow list"):
            make_controller(make_context(image="maven"), fake_client, policy=policy).run()


class TestPatchRetry:

    def test_conflicts_below_limit(self, make_context, make_controller, make_client, metrics):
        client = make_client(conflicts=3)
        controller = make_controller(make_context(), client)

        controller.run()

        assert client.patch_calls == 4
        assert controller.patch_retry.attempts == 3
        assert len(client.added) == 1
        assert metrics.value("patch_conflicts_total", cloud="kubernetes") == 3

    def test_conflicts_at_limit(self, make_context, make_controller, make_client, settings):
        client = make_client(conflicts=2)
        controller = make_controller(
            make_context(), client, settings=settings.model_copy(update={"patch_max_retry": 2})
        )
        controller.run()
        assert client.patch_calls == 3

    def test_conflicts_exhausted(self, make_context, make_controller, make_client, settings, metrics):
        client = make_client(conflicts=3)
        controller = make_controller(
            make_context(), client, settings=settings.model_copy(update={"patch_max_retry": 2})
        )

        with pytest.raises(ProvisioningFailed) as exc_info:
            controller.run()

        error = exc_info.value
        assert client.patch_calls == 3
        assert error.retries == 2
        assert error.kind == FailureKind.PROVISIONING_FAILED
        assert error.message.startswith("Ephemeral container could not be added.")
        assert "(Conflict)" in error.message
        assert "Reached max retry limit (2 retries)" in error.message
        assert client.added == []
        assert metrics.value("creation_failed_total", cloud="kubernetes", kind="provisioning-failed") == 1

    def test_other_errors_are_not_retried(self, make_context, make_controller, make_client):
        client = make_client(patch_error=ClusterError("ephemeral containers are forbidden", status=403, reason="Forbidden"))
        controller = make_controller(make_context(), client)

        with pytest.raises(ProvisioningFailed) as exc_info:
            controller.run()

        assert client.patch_calls == 1
        assert exc_info.value.message == (
            "Ephemeral container could not be added. ephemeral containers are forbidden (Forbidden)"
        )

    def test_server_retry_delay_is_honoured(self, make_context, make_controller, make_client):
        client = make_client(conflicts=1, retry_after=7)
        controller = make_controller(make_context(), client)
        sleeps = []
        controller._sleep = sleeps.append

        controller.run()

        assert sleeps == [7.0]

    def test_jitter_is_bounded(self, make_context, make_controller, make_client, settings):
        client = make_client(conflicts=5)
        controller = make_controller(
            make_context(), client, settings=settings.model_copy(update={"patch_retry_max_wait": 0.5})
        )
        sleeps = []
        controller._sleep = sleeps.append

        controller.run()

        assert len(sleeps) == 5
        assert all(0 <= delay <= 0.5 for delay in sleeps)

    def test_missing_pod(self, make_context, make_controller, make_client):
        controller = make_controller(make_context(), make_client(missing=True))
        with pytest.raises(ProvisioningFailed, match="Could not read Pod ci/build-pod"):
            controller.run()


class TestStart:

    def test_transient_failures_are_retried(self, make_context, make_controller, make_client, metrics):
        client = make_client(status_scripts=[[START_ERROR], [START_ERROR], [CREATING, RUNNING]])
        seen = []
        context = make_context(body=seen.append)
        controller = make_controller(context, client)

        controller.run()

        names = client.added_names
        assert len(names) == 3
        assert len(set(names)) == 3
        assert seen[0]["POD_CONTAINER"] == names[2]
        assert client.stop_counts == {names[2]: 1}
        assert controller.start_retry.attempts == 2
        assert "Ephemeral container terminated while starting with reason StartError, trying again (1 of 3)" in context.lines
        assert "Ephemeral container terminated while starting with reason StartError, trying again (2 of 3)" in context.lines
        assert metrics.value("creation_retried_total", cloud="kubernetes") == 2
        assert metrics.value("created_total", cloud="kubernetes") == 1

    def test_transient_failures_exhausted(self, make_context, make_controller, make_client, metrics):
        client = make_client(status_scripts=[[START_ERROR]] * 4)
        controller = make_controller(make_context(), client)

        with pytest.raises(StartFailed) as exc_info:
            controller.run()

        error = exc_info.value
        last = client.added_names[-1]
        assert len(client.added) == 4
        assert error.container_name == last
        assert error.retries == 3
        assert error.status.reason == "StartError"
        assert error.message == (
            f"Ephemeral container {last} on Pod build-pod failed to start after 3 retries: "
            "terminated(reason=StartError, message=exec format, signal=None, exitCode=128)"
        )
        assert client.stop_counts == {}
        assert metrics.value("creation_failed_total", cloud="kubernetes", kind="start-failed") == 1

    def test_other_terminations_are_fatal(self, make_context, make_controller, make_client):
        client = make_client(status_scripts=[[{"state": ContainerState.TERMINATED, "reason": "Error"}]])
        context = make_context()
        controller = make_controller(context, client)

        with pytest.raises(StartFailed) as exc_info:
            controller.run()

        name = client.added_names[0]
        assert len(client.added) == 1
        assert exc_info.value.message == (
            f"Ephemeral container {name} on Pod build-pod failed to start: "
            "terminated(reason=Error, signal=None, exitCode=None) " + ARCHITECTURE_HINT
        )
        assert ARCHITECTURE_HINT in context.lines

    def test_resource_hint(self, make_context, make_controller, make_client):
        status = {
            "state": ContainerState.TERMINATED,
            "reason": "ContainerCannotRun",
            "message": "failed to create shim task: context deadline exceeded",
            "exit_code": 128,
        }
        context = make_context()
        with pytest.raises(StartFailed) as exc_info:
            make_controller(context, make_client(status_scripts=[[status]])).run()
        assert exc_info.value.message.endswith("exitCode=128) " + RESOURCE_HINT)
        assert ARCHITECTURE_HINT not in exc_info.value.message
        assert RESOURCE_HINT in context.lines
        assert ARCHITECTURE_HINT not in context.lines

    def test_waiting_reasons_are_reported_once(self, make_context, make_controller, make_client):
        pulling = {"state": ContainerState.WAITING, "reason": "ErrImagePull", "message": "pull failed"}
        backoff = {"state": ContainerState.WAITING, "reason": "ImagePullBackOff", "message": "back-off"}
        client = make_client(status_scripts=[[CREATING, pulling, pulling, backoff, pulling, RUNNING]])
        context = make_context()

        make_controller(context, client).run()

        name = client.added_names[0]
        waiting = [line for line in context.lines if "waiting" in line]
        assert waiting == [
            f"Ephemeral container {name} waiting: waiting(reason=ErrImagePull, message=pull failed)",
            f"Ephemeral container {name} waiting: waiting(reason=ImagePullBackOff, message=back-off)",
        ]

    def test_readiness_timeout(self, make_context, make_controller, make_client, settings, metrics):
        pulling = {"state": ContainerState.WAITING, "reason": "ErrImagePull", "message": "not found"}
        client = make_client(status_scripts=[[pulling]])
        controller = make_controller(
            make_context(), client, settings=settings.model_copy(update={"ready_timeout": 0.2})
        )

        with pytest.raises(ReadinessTimeout) as exc_info:
            controller.run()

        name = client.added_names[0]
        assert exc_info.value.message == (
            f"Ephemeral container {name} on Pod build-pod failed to start after 0.2 seconds: "
            "waiting(reason=ErrImagePull, message=not found)"
        )
        assert exc_info.value.last_status.reason == "ErrImagePull"
        assert metrics.value("creation_failed_total", cloud="kubernetes", kind="readiness-timeout") == 1


class TestIdentity:

    def test_default_identity(self, make_context, make_controller, fake_client):
        identity = StaticIdentity((1000, 1001))
        context = make_context()
        make_controller(context, fake_client, identity=identity).run()

        security = fake_client.added[0].security_context
        assert (security.run_as_user, security.run_as_group) == (1000, 1001)
        assert context.lines[0].endswith("with image maven:3 (running as 1000:1001)")

    def test_request_identity_wins(self, make_context, make_controller, fake_client):
        identity = StaticIdentity((1000, 1001))
        make_controller(make_context(run_as_user=0, run_as_group=0), fake_client, identity=identity).run()

        assert identity.calls == 0
        assert fake_client.added[0].security_context.run_as_user == 0

    def test_identity_failure_keeps_image_default(self, make_context, make_controller, fake_client, caplog):
        identity = StaticIdentity(error=IdentityLookupError("'id -u' timed out"))
        with caplog.at_level(logging.WARNING):
            make_controller(make_context(), fake_client, identity=identity).run()

        assert fake_client.added[0].security_context is None
        assert "Could not determine step user and group" in caplog.text

    def test_identity_looked_up_once(self, make_context, make_controller, make_client):
        identity = StaticIdentity((5, 5))
        client = make_client(status_scripts=[[START_ERROR], [RUNNING]])
        make_controller(make_context(), client, identity=identity).run()
        assert identity.calls == 1
        assert all(c.security_context.run_as_user == 5 for c in client.added)


class TestCancellation:

    def test_stop_while_active_stops_once(self, make_context, make_controller, fake_client):
        entered = threading.Event()
        holder = {}

        def body(env):
            entered.set()
            holder["context"].abort_event.wait(2)

        context = make_context(body=body)
        holder["context"] = context
        controller = make_controller(context, fake_client)

        controller.start()
        assert entered.wait(2)
        controller.stop("Cancelled by user")
        assert controller.join(timeout=2)

        name = fake_client.added_names[0]
        assert fake_client.stop_counts == {name: 1}
        assert context.cancel_cause == "Cancelled by user"
        assert controller.state == ControllerState.TERMINATED

    def test_stop_with_failing_body_stops_once(self, make_context, make_controller, fake_client):
        entered = threading.Event()
        holder = {}

        def body(env):
            entered.set()
            holder["context"].abort_event.wait(2)
            raise RuntimeError("interrupted script")

        context = make_context(body=body)
        holder["context"] = context
        controller = make_controller(context, fake_client)

        controller.start()
        assert entered.wait(2)
        controller.stop()
        with pytest.raises(RuntimeError, match="interrupted script"):
            controller.join(timeout=2)

        assert fake_client.stop_counts == {fake_client.added_names[0]: 1}

    def test_stop_while_waiting_for_ready(self, make_context, make_controller, make_client, settings):
        client = make_client(status_scripts=[[CREATING]])
        called = []
        controller = make_controller(
            make_context(body=called.append), client, settings=settings.model_copy(update={"ready_timeout": 5})
        )

        controller.start()
        wait_until(lambda: client.status_reads > 0)
        controller.stop("aborted")

        assert controller.join(timeout=2)
        assert called == []
        assert controller.state == ControllerState.TERMINATED
        assert client.stop_counts == {client.added_names[0]: 1}

    def test_stop_before_run(self, make_context, make_controller, fake_client):
        context = make_context()
        controller = make_controller(context, fake_client)
        controller.stop("too late")

        controller.run()

        assert fake_client.patch_calls == 0

    def test_stop_during_conflict_backoff(self, make_context, make_controller, make_client, settings):
        client = make_client(conflicts=5, retry_after=30)
        controller = make_controller(make_context(), client)

        controller.start()
        wait_until(lambda: client.patch_calls > 0)
        controller.stop()

        assert controller.join(timeout=2)
        assert client.added == []

    def test_join_reraises_failure(self, make_context, make_controller, fake_client):
        controller = make_controller(make_context(), fake_client, policy=PolicyConfig())
        controller.start()
        with pytest.raises(PolicyRejected):
            controller.join(timeout=2)

    def test_join_requires_start(self, make_context, make_controller, fake_client):
        with pytest.raises(RuntimeError):
            make_controller(make_context(), fake_client).join()

    def test_teardown_failure_is_logged(self, make_context, make_controller, make_client, caplog):
        client = make_client()

        def broken_exec(workload, container_name, command):
            raise ClusterError("container not found", status=404)

        client.open_exec = broken_exec
        with caplog.at_level(logging.WARNING):
            make_controller(make_context(), client).run()

        assert "Failed to stop ephemeral container" in caplog.text

    def test_teardown_of_vanished_container(self, make_context, fake_client, settings, caplog):
        context = make_context()
        teardown = Teardown(fake_client, context, "step-gone", ["kill", "1"], settings)

        started = time.monotonic()
        with caplog.at_level(logging.WARNING):
            teardown.run()

        assert time.monotonic() - started < settings.stop_timeout
        assert fake_client.stop_counts == {}
        assert fake_client.status_reads == 1
        assert "did not terminate" not in caplog.text
