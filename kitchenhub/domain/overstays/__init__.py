"""Storage overstay penalty engine: detection, review, charging and audit"""
