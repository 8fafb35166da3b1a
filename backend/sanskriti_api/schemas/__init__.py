"""Response schemas for the endpoints this core owns."""
