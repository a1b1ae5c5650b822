from blockterm.cli import app

app()
