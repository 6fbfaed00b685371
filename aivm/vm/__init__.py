"""VM backends (Colima and Docker), base images, SSH helpers and lifecycle locking."""