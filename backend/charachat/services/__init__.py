# Services modules
