import uvicorn


def main() -> None:
    uvicorn.run("loyalty_engine.app:create_app", factory=True)


if __name__ == "__main__":
    main()
