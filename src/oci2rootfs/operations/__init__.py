"""Pipeline stages: manifest resolution, blob pulling and layer application."""
