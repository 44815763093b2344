"""Events published to the presentation layer."""
