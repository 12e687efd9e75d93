import hashlib

from .pipelines import (
    NO_AUDIO_ID,
    PipelineCatalog,
    audio_props,
    build_pipeline_file,
    render_pipeline,
)

AV_PIPELINE = (
    "v4l2src ! textoverlay text='' name=overlay ! x264enc ! mpegtsmux name=mux ! appsink name=appsink "
    "alsasrc device=hw:2 ! audioconvert ! voaacenc bitrate=128000 ! aacparse ! queue ! mux. "
)
VIDEO_PIPELINE = "videotestsrc ! x264enc ! mpegtsmux name=mux ! appsink name=appsink"


def make_catalog(tmp_path, hw="jetson", path_exists=lambda p: False):
    for sub, name, text in (
        ("custom", "mine", VIDEO_PIPELINE),
        (hw, "h265_hdmi", AV_PIPELINE),
        (hw, "h264_camlink", AV_PIPELINE),
        ("generic", "test", VIDEO_PIPELINE),
    ):
        (tmp_path / sub).mkdir(parents=True, exist_ok=True)
        (tmp_path / sub / name).write_text(text)
    catalog = PipelineCatalog(tmp_path, hw, path_exists=path_exists)
    catalog.refresh()
    return catalog


class TestCatalog:
    def test_ids_are_sha1_of_relative_name(self, tmp_path):
        catalog = make_catalog(tmp_path)
        pid = hashlib.sha1(b"generic/test").hexdigest()
        assert catalog.get(pid).name == "generic/test"
        assert catalog.get("unknown-id") is None

    def test_audio_props_in_view(self, tmp_path):
        catalog = make_catalog(tmp_path)
        view = {v["name"]: v for v in catalog.view().values()}
        assert view["jetson/h264_camlink"] == {"name": "jetson/h264_camlink", "asrc": True, "acodec": True}
        assert view["custom/mine"]["asrc"] is False

    def test_rk3588_without_hdmi_input_hides_hdmi_pipelines(self, tmp_path):
        catalog = make_catalog(tmp_path, hw="rk3588")
        names = {v["name"] for v in catalog.view().values()}
        assert "rk3588/h265_hdmi" not in names
        assert "rk3588/h264_camlink" in names

    def test_missing_directory_is_skipped(self, tmp_path):
        catalog = PipelineCatalog(tmp_path / "nothing", "generic")
        assert catalog.refresh() == {}


class TestRender:
    def test_props(self):
        assert audio_props(AV_PIPELINE) == (True, True)
        assert audio_props(VIDEO_PIPELINE) == (False, False)

    def test_audio_device_and_opus(self):
        out = render_pipeline(AV_PIPELINE, True, True, "C4K", "opus", remove_overlay=False)
        assert "alsasrc device=hw:C4K" in out
        assert "opusenc bitrate=128000 ! opusparse !" in out
        assert "voaacenc" not in out

    def test_no_audio_strips_audio_branch(self):
        out = render_pipeline(AV_PIPELINE, True, True, NO_AUDIO_ID, "opus", remove_overlay=False)
        assert "alsasrc" not in out
        assert "opusenc" not in out

    def test_overlay_removed(self):
        out = render_pipeline(AV_PIPELINE, True, True, "Pipeline default", "aac", remove_overlay=True)
        assert "textoverlay" not in out
        assert "alsasrc device=hw:2" in out
        assert "voaacenc bitrate=128000" in out

    def test_build_file(self, tmp_path):
        catalog = make_catalog(tmp_path / "p")
        pipeline = catalog.get(hashlib.sha1(b"jetson/h264_camlink").hexdigest())
        out = build_pipeline_file(pipeline, tmp_path / "belacoder_pipeline", "usbaudio", "aac", remove_overlay=True)
        assert out == tmp_path / "belacoder_pipeline"
        assert "alsasrc device=hw:usbaudio" in out.read_text()
