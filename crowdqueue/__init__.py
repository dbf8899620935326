"""CrowdQueue: crowd-voted playback for a venue."""
