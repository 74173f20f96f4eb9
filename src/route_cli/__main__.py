from route_cli.cmd.cli import app

app(prog_name="route-cli")
