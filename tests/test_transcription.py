import httpx

from textme.config import TextMeSettings
from textme.sendblue import SendblueClient, media_notice
from textme.transcription import WhisperTranscriber

VOICE_URL = "https://cdn.example.com/media/voice.m4a"


def _transcriber(handler):
    return WhisperTranscriber(api_key="sk-test", transport=httpx.MockTransport(handler))


def test_voice_note_is_transcribed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            assert str(request.url) == VOICE_URL
            return httpx.Response(200, content=b"RIFF-audio")
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        return httpx.Response(200, json={"text": " run the test suite "})

    notice = media_notice(VOICE_URL, _transcriber(handler))

    assert notice == '[Voice note transcription: "run the test suite"]'
    assert seen["url"] == "https://api.openai.com/v1/audio/transcriptions"
    assert seen["auth"] == "Bearer sk-test"
    assert b"whisper-1" in seen["body"]
    assert b'filename="audio.m4a"' in seen["body"]
    assert b"RIFF-audio" in seen["body"]


def test_transcription_failure_falls_back_to_notice():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, content=b"audio")
        return httpx.Response(500, text="upstream error")

    assert media_notice(VOICE_URL, _transcriber(handler)) == f"[User sent a voice note: {VOICE_URL}]"


def test_audio_download_failure_falls_back_to_notice():
    calls = []

    def handler(request):
        calls.append(request.method)
        return httpx.Response(404)

    assert media_notice(VOICE_URL, _transcriber(handler)) == f"[User sent a voice note: {VOICE_URL}]"
    assert calls == ["GET"]


def test_images_are_never_sent_for_transcription():
    def handler(request):
        raise AssertionError("no request expected")

    notice = media_notice("https://cdn.example.com/pic.png", _transcriber(handler))
    assert notice == "[User sent an image: https://cdn.example.com/pic.png]"


def test_transcriber_only_built_with_api_key():
    assert WhisperTranscriber.from_settings(TextMeSettings(openai_api_key="")) is None
    transcriber = WhisperTranscriber.from_settings(TextMeSettings(openai_api_key="sk-live"))
    assert transcriber is not None and transcriber.model == "whisper-1"


def test_fetch_inbound_carries_transcription():
    def handler(request):
        if request.url.host == "api.sendblue.com":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "message_handle": "m1",
                            "from_number": "+15550001111",
                            "content": "",
                            "media_url": VOICE_URL,
                            "date_sent": "2026-10-19T12:00:00Z",
                        }
                    ]
                },
            )
        if request.method == "GET":
            return httpx.Response(200, content=b"audio")
        return httpx.Response(200, json={"text": "deploy to staging"})

    transport = httpx.MockTransport(handler)
    client = SendblueClient(
        api_key="key-id",
        api_secret="secret",
        from_number="+15550009999",
        transport=transport,
        transcriber=WhisperTranscriber(api_key="sk-test", transport=transport),
    )

    [message] = client.fetch_inbound("2026-10-19T00:00:00Z")

    assert message.text == '[Voice note transcription: "deploy to staging"]'
    assert message.media_url == VOICE_URL
