from moss.main import app

app()
