"""JSON blueprints of the approval API."""
