"""
Rendition selection.

Picks the rendition(s) that best fit an OutputRequest. Pure functions: no I/O,
inputs are never mutated, and identical inputs always give identical plans.
"""

from fetcher.service.models import (
    SingleStream,
    DualStream,
    NoPlan,
)


def _height(rendition):
    return rendition.video_height


def _bitrate(rendition):
    return rendition.audio_bitrate


def pick_best(candidates, key):
    """
    Return the candidate with the highest key.

    Ties prefer the larger size_hint, then the earliest in catalog order.
    """
    best = None
    best_rank = None
    for rendition in candidates:
        rank = (key(rendition), rendition.size_hint or 0)
        # Strictly greater keeps the first of equals
        if best is None or rank > best_rank:
            best = rendition
            best_rank = rank
    return best


def pick_exact_or_closest_below(candidates, target):
    """
    Return the candidate whose height equals target, else the tallest one
    not exceeding it, else None.
    """
    exact = [r for r in candidates if r.video_height == target]
    if exact:
        return pick_best(exact, _height)

    below = [r for r in candidates if r.video_height <= target]
    return pick_best(below, _height)


def _usable(renditions):
    return [r for r in renditions if r.usable]


def combined_candidates(renditions):
    return [r for r in _usable(renditions) if r.is_combined and r.video_height]


def video_only_candidates(renditions):
    return [r for r in _usable(renditions) if r.is_video_only and r.video_height]


def audio_only_candidates(renditions):
    return [r for r in _usable(renditions) if r.is_audio_only and r.audio_bitrate]


def _pick_video(candidates, request):
    target = request.target_height
    if target is not None:
        return pick_exact_or_closest_below(candidates, target)
    return pick_best(candidates, _height)


def select_dual_stream(renditions, request):
    """
    Choose a separate video-only and audio-only rendition to mux.

    The quality preference only applies to the video side; audio is always
    the best bitrate available.

    Returns:
        DualStream or NoPlan
    """
    video = _pick_video(video_only_candidates(renditions), request)
    audio = pick_best(audio_only_candidates(renditions), _bitrate)

    if video is None or audio is None:
        return NoPlan()
    return DualStream(video=video, audio=audio)


def _select_video(renditions, request):
    combined = combined_candidates(renditions)

    candidate = _pick_video(combined, request)
    if candidate is not None:
        return SingleStream(candidate)

    plan = select_dual_stream(renditions, request)
    if isinstance(plan, DualStream):
        return plan

    # Last resort for an exact height: a combined rendition above the target
    # beats failing outright
    if request.target_height is not None and combined:
        return SingleStream(pick_best(combined, _height))

    return NoPlan()


def _select_audio(renditions, request):
    candidates = audio_only_candidates(renditions)

    target = request.target_bitrate
    if target is not None:
        exact = [r for r in candidates if r.audio_bitrate == target]
        if exact:
            return SingleStream(pick_best(exact, _bitrate))

    # Without an exact match audio always takes the highest bitrate
    best = pick_best(candidates, _bitrate)
    if best is None:
        return NoPlan()
    return SingleStream(best)


def select(renditions, request):
    """
    Choose the rendition(s) that satisfy a request.

    Args:
        renditions: list of Rendition in catalog order
        request: OutputRequest

    Returns:
        SingleStream, DualStream or NoPlan

    Example:
        >>> select([], OutputRequest('video'))
        NoPlan()
    """
    renditions = list(renditions)
    if request.is_audio:
        return _select_audio(renditions, request)
    return _select_video(renditions, request)


def describe_plan(plan):
    """Human-readable one-line description of a plan, for logs"""
    if isinstance(plan, SingleStream):
        r = plan.rendition
        return f'single stream {r.quality_label} ({r.container}, id {r.id})'
    if isinstance(plan, DualStream):
        return (
            f'dual stream video {plan.video.quality_label} (id {plan.video.id}) '
            f'+ audio {plan.audio.quality_label} (id {plan.audio.id})'
        )
    return 'no plan'
