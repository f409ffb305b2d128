"""User-facing notification texts."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from imagesync.services.parser_service import SyncRequest
    from imagesync.services.tracker_service import TrackOutcome


def confirmation(requests: list[SyncRequest]) -> str:
    lines = ["🔄 Processing image sync request...", ""]
    if len(requests) > 1:
        lines.append(f"{len(requests)} images:")
        lines.append("")
        for index, request in enumerate(requests, start=1):
            lines.append(f"{index}. {request.source_image} → {request.target_ref}")
    else:
        request = requests[0]
        lines.append(f"📥 Source: {request.source_image}")
        lines.append(f"📤 Target: {request.target_ref}")
        if request.platform:
            lines.append(f"🏗️ Platform: {request.platform}")
    return "\n".join(lines)


def queued(added: int, skipped: int) -> str:
    text = f"✅ Added {added} image(s) to the sync queue\n\n"
    if skipped:
        text += f"⚠️ Skipped {skipped} image(s) already queued\n\n"
    text += "GitHub Actions has been triggered and is pulling and pushing the images..."
    return text


def republished(skipped: int) -> str:
    return (
        f"⚠️ {skipped} image(s) were already queued from an earlier request that could not "
        "be published.\n\nThe pending queue has now been published and GitHub Actions triggered."
    )


def busy() -> str:
    return "⏳ Another sync request is being processed. Please try again in a moment."


def publish_failed(error: str) -> str:
    return (
        f"❌ Could not publish the sync queue:\n{error}\n\n"
        "The request is kept in the queue and will be published with the next one."
    )


def unexpected_error(error: str) -> str:
    return (
        f"❌ Error while processing the sync request:\n{error}\n\n"
        "Please check the configuration or retry later."
    )


def outcome(result: TrackOutcome, synced: int) -> str:
    """Final message for a tracked workflow run."""
    from imagesync.services.tracker_service import OutcomeKind

    run = result.run
    link = f"\n🔗 Details: {run.url}" if run is not None and run.url else ""
    number = f"\n📊 Run: #{run.number}" if run is not None else ""

    if result.kind is OutcomeKind.SUCCESS:
        return f"✅ Image sync finished!\n\n📊 Synced: {synced} image(s){number}{link}"
    if result.kind is OutcomeKind.FAILURE:
        conclusion = run.conclusion if run is not None and run.conclusion else "failure"
        return (
            f"❌ Image sync failed ({conclusion})!\n{number}{link}\n\n"
            "Please check the workflow logs."
        )
    if result.kind is OutcomeKind.CANCELLED:
        return f"🚫 Image sync was cancelled.\n{number}{link}"
    if result.kind is OutcomeKind.TIMEOUT:
        return f"⏳ Image sync is still running after the waiting period; it may yet finish.{link}"
    return "❓ Lost track of the image sync workflow. Please check GitHub Actions."
