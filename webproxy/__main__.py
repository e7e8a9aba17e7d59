import uvicorn

from webproxy.vars import HOST, PORT


def main() -> None:
    uvicorn.run("webproxy.server:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
