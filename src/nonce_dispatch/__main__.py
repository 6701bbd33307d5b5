import os

import uvicorn


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("nonce_dispatch.app:app", host=host, port=port, lifespan="on")


if __name__ == "__main__":
    main()
