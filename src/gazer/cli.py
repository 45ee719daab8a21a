"""Command line entry point."""
import click
import yaml

from .control_plane.crd import build_crd


@click.command()
@click.option("--crd", "gen_crd", is_flag=True, help="Print the StaticSite CRD as YAML and exit.")
def main(gen_crd: bool) -> None:
    """Gazer: automatic static site deployer for Kubernetes."""
    if gen_crd:
        click.echo(yaml.safe_dump(build_crd(), sort_keys=False), nl=False)
        return

    import uvicorn

    from .main import settings

    uvicorn.run(
        "gazer.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
