"""
devicedeck: device session and recording orchestrator

Discovers locally attached iOS and Android devices and drives them: app
install, data clearing, reboot, screen recording with ffmpeg post-processing,
screenshots and live log capture.

Usage:
    from devicedeck.orchestrator import DeviceOrchestrator

    async with DeviceOrchestrator() as deck:
        await deck.registry.scan_once()
        for device in deck.registry.devices:
            print(device.display_name)
"""

__version__ = "1.0.0"
