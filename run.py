from livestream_proxy.main import app

# Run the proxy app
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=7860)
