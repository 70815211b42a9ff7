"""
Command Line Interface for KEC.
"""
import logging
import os
import click
from pydantic import ValidationError

from ..errors import ProvisioningError
from ..MANAGERS.identity import ShellIdentitySource
from ..MANAGERS.kubernetes_client import KubernetesWorkloadClient
from ..MANAGERS.metrics import default_metrics, serve_metrics
from ..MANAGERS.provisioning_controller import ProvisioningController
from ..MANAGERS.workload_client import ClusterError
from ..MODELS.container_request import ContainerRequest, EnvVar
from ..MODELS.controller_config import ControllerSettings
from ..MODELS.policy_config import PolicyConfig
from ..MODELS.workload import WorkloadRef
from ..PARSERS.rules_parser import RulesParser
from ..REGISTRY.image_reference import ImageReference
from ..RULES.container_image_rule import ContainerImageRule
from ..RULES.rule_evaluator import RuleEvaluator
from ..RUNNERS.container_exec_runner import CommandFailed, ContainerCommandRunner
from ..RUNNERS.step_context import StepContext


def _policy(ctx, cloud: str) -> PolicyConfig:
    """
    Configured rules, or allow everything on the given cloud without a rules file.
    """
    policy = ctx.obj.get('policy')
    if policy is None:
        return PolicyConfig(clouds={cloud: ()}, global_rules=(ContainerImageRule(),))
    return policy


def _parse_env(values):
    env_vars = []
    for item in values:
        name, sep, value = item.partition('=')
        if not sep or not name:
            raise click.BadParameter(f"Expected NAME=VALUE, got '{item}'", param_hint='--env')
        env_vars.append(EnvVar(name=name, value=value))
    return tuple(env_vars)


@click.group()
@click.option('--config', '-c', 'config_file', default=None, help='Policy rules file path')
@click.option('--env-file', default=None, help='.env file with KEC_* settings and step variables')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_file, env_file, verbose):
    """
    KEC - Kubernetes ephemeral containers for build steps.

    Checks container requests against policy rules and runs scripts in
    ephemeral containers added to a running Pod.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['env_file'] = env_file
    if config_file:
        if not os.path.exists(config_file):
            raise click.FileError(config_file, hint="rules file not found")
        try:
            ctx.obj['policy'] = RulesParser().parse(config_file)
        except ValueError as e:
            raise click.ClickException(str(e))


@cli.command('parse-image')
@click.argument('image')
def parse_image(image):
    """Show the normalized components of an image reference."""
    reference = ImageReference.parse(image)
    if reference is None:
        click.echo(f"Invalid image reference: {image}", err=True)
        raise SystemExit(1)

    click.echo(f"{'reference':10} {reference.reference}")
    click.echo(f"{'name':10} {reference.name}")
    click.echo(f"{'domain':10} {reference.domain}")
    click.echo(f"{'path':10} {reference.path}")
    click.echo(f"{'tag':10} {reference.tag or ''}")
    click.echo(f"{'digest':10} {reference.digest or ''}")


@cli.command()
@click.argument('image')
@click.option('--cloud', default='kubernetes', help='Cloud the host Pod belongs to')
@click.pass_context
def check(ctx, image, cloud):
    """Evaluate the policy rules for an image."""
    try:
        request = ContainerRequest(image=image)
    except ValidationError as e:
        click.echo(f"Rejected: {e.errors()[0]['msg']}")
        raise SystemExit(1)

    rules = _policy(ctx, cloud).rules_for(cloud)
    if rules is None:
        click.echo(f"Rejected: Ephemeral containers not enabled on {cloud}")
        raise SystemExit(1)

    rejection = RuleEvaluator().first_rejection(request, rules)
    if rejection is not None:
        click.echo(f"Rejected: {rejection.reason}")
        raise SystemExit(1)
    click.echo("Allowed")


@cli.command()
@click.option('--namespace', '-n', default='default', help='Namespace of the Pod')
@click.option('--pod', required=True, help='Pod to add the ephemeral container to')
@click.option('--cloud', default='kubernetes', help='Cloud the Pod belongs to')
@click.option('--image', required=True, help='Container image')
@click.option('--command-line', default=None, help='Container command, empty to clear the entrypoint')
@click.option('--env', '-e', 'env', multiple=True, help='Container variable NAME=VALUE')
@click.option('--target-container', default=None, help='Container whose process namespace is shared')
@click.option('--run-as-user', default=None, help='User id of the container process')
@click.option('--run-as-group', default=None, help='Group id of the container process')
@click.option('--no-pull', is_flag=True, help='Only pull the image if it is not present')
@click.option('--shell', default=None, help='Shell used to run the script')
@click.option('--kubeconfig', default=None, help='Kubeconfig file, in-cluster config if omitted')
@click.option('--metrics-port', type=int, default=None, help='Expose Prometheus metrics on this port')
@click.argument('script')
@click.pass_context
def run(ctx, namespace, pod, cloud, image, command_line, env, target_container,
        run_as_user, run_as_group, no_pull, shell, kubeconfig, metrics_port, script):
    """Run SCRIPT in an ephemeral container of a Pod."""
    try:
        request = ContainerRequest.from_command_line(
            image,
            command_line,
            env_vars=_parse_env(env),
            target_container=target_container,
            run_as_user=run_as_user,
            run_as_group=run_as_group,
            always_pull_image=not no_pull,
            shell=shell,
        )
    except ValidationError as e:
        raise click.BadParameter(e.errors()[0]['msg'])

    env_file = ctx.obj.get('env_file')
    settings = ControllerSettings.from_env(env_file)
    try:
        workload_client = KubernetesWorkloadClient.from_config(kubeconfig)
    except ClusterError as e:
        raise click.ClickException(str(e))

    if metrics_port is not None:
        serve_metrics(metrics_port)

    workload = WorkloadRef(namespace=namespace, name=pod, cloud=cloud)
    context = StepContext(
        request,
        workload,
        body=ContainerCommandRunner(workload_client, workload, script, shell=request.shell, output=click.echo),
        console=click.echo,
        env_files=[env_file] if env_file else None,
    )
    controller = ProvisioningController(
        context,
        workload_client,
        _policy(ctx, cloud),
        settings=settings,
        identity=ShellIdentitySource(settings.identity_timeout),
        metrics=default_metrics(),
    )

    controller.start()
    try:
        try:
            while not controller.join(timeout=0.5):
                pass
        except KeyboardInterrupt:
            click.echo("\nStopping ephemeral container...")
            controller.stop("Interrupted by user")
            controller.join()
    except ProvisioningError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except CommandFailed as e:
        raise SystemExit(e.returncode if e.returncode else 1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
