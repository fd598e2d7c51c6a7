import click

from .lampstack import Lampstack

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("-c", "--config", type=click.Path(dir_okay=False), help="Path to lampstack.yaml.")
@click.option(
    "-w",
    "--workspace",
    type=click.Path(file_okay=False),
    help="Terraform working directory (default: .lampstack).",
)
@click.option("-v", "--verbose", is_flag=True, help="Show commands and per-resource detail.")
@click.option("-q", "--quiet", is_flag=True, help="Only print errors.")
@click.pass_context
def cli(ctx, config, workspace, verbose, quiet):
    """Provision a LAMP + WordPress host on AWS with Terraform and cloud-init."""
    ctx.obj = {
        "config": config,
        "workspace": workspace,
        "verbose": verbose,
        "quiet": quiet,
    }


def _app(ctx) -> Lampstack:
    return Lampstack(**ctx.obj)


@cli.command()
@click.pass_context
def init(ctx):
    """Write an example lampstack.yaml."""
    _app(ctx).lampstack_init()


@cli.command()
@click.pass_context
def dump(ctx):
    """Print the loaded configuration after template processing."""
    _app(ctx).dump_config()


@cli.command()
@click.pass_context
def validate(ctx):
    """Check the desired state for consistency."""
    _app(ctx).validate()


@cli.command()
@click.option("--destroy", is_flag=True, help="Plan a full teardown instead.")
@click.pass_context
def plan(ctx, destroy):
    """Show the changes apply would make."""
    _app(ctx).plan(destroy=destroy)


@cli.command()
@click.option("-y", "--yes", "auto_approve", is_flag=True, help="Skip confirmation.")
@click.pass_context
def apply(ctx, auto_approve):
    """Converge infrastructure to the desired state."""
    _app(ctx).apply(auto_approve=auto_approve)


@cli.command()
@click.option("-y", "--yes", "auto_approve", is_flag=True, help="Skip confirmation.")
@click.pass_context
def destroy(ctx, auto_approve):
    """Tear down all declared resources."""
    _app(ctx).destroy(auto_approve=auto_approve)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print outputs as JSON.")
@click.pass_context
def output(ctx, as_json):
    """Show instance id, public address, URL and SSH command."""
    _app(ctx).show_outputs(as_json=as_json)


@cli.command("user-data")
@click.argument("name", required=False)
@click.pass_context
def user_data(ctx, name):
    """Print the cloud-init script for a bootstrap plan or instance."""
    _app(ctx).user_data(name)


@cli.command()
@click.argument("name", required=False)
@click.pass_context
def boot(ctx, name):
    """Run a bootstrap plan on this host."""
    _app(ctx).boot(name)


@cli.command("boot-status")
@click.argument("name", required=False)
@click.pass_context
def boot_status(ctx, name):
    """Print the bootstrap runner status."""
    _app(ctx).boot_status(name)


def main():
    cli()


if __name__ == "__main__":
    main()
