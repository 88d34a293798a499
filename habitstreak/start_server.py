#!/usr/bin/env python3
"""
Server startup wrapper for the habit streak API.
"""
import os
import sys

# Add workspace to path
workspace_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, workspace_root)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print("[habitstreak] Starting habit streak service")
    print(f"[habitstreak] Server: http://{host}:{port}")
    print("[habitstreak] Press CTRL+C to stop")
    print()
    try:
        import uvicorn

        uvicorn.run(
            "habitstreak.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[habitstreak] Shutting down...")
        sys.exit(0)
    except Exception as e:
        print(f"[ERROR] {type(e).__name__}: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
