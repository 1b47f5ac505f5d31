import os
import uvicorn

def main():
    # Ensure necessary directories exist
    os.makedirs("screenshots", exist_ok=True)

    # Run uvicorn
    uvicorn.run(
        "formtester.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("FORMTESTER_DEBUG", "").lower() in ("1", "true"),
        log_level="info"
    )

if __name__ == "__main__":
    main()
