from zoovio import create_app

app = create_app()
