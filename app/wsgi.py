from app.esign import create_app

app = create_app()
