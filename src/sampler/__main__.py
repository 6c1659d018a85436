import uvicorn


def main():
    uvicorn.run("sampler.app:app", host="0.0.0.0", port=8000, lifespan="on")


if __name__ == "__main__":
    main()
