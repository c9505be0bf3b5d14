import os

from chainproof import create_app

# factory con la config de FLASK_ENV (por defecto "development")
app = create_app(os.getenv("FLASK_ENV", "development"))

if __name__ == "__main__":
    # threaded: cada stream SSE ocupa un hilo mientras dura la auditoría
    app.run(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "5000")),
        debug=app.config.get("DEBUG", False),
        threaded=True,
    )
