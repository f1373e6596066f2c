import unittest

from cliplane.ffmpeg import TranscodeCommand, probe_args


class TestTranscodeCommand(unittest.TestCase):
    def test_trim_scale_encode(self):
        args = (
            TranscodeCommand()
            .input("/media/in.mp4")
            .trim(1.5, 4.0)
            .scale(1280, 720)
            .video_encode("libx264", "fast", 20)
            .audio_encode("aac", "192k")
            .output("/tmp/out.mp4")
            .build_args()
        )
        self.assertEqual(args[:2], ["-hide_banner", "-nostdin"])
        # Input seeking: -ss/-t come before -i.
        self.assertLess(args.index("-ss"), args.index("-i"))
        self.assertEqual(args[args.index("-ss") + 1], "1.500000")
        self.assertEqual(args[args.index("-t") + 1], "4.000000")
        vf = args[args.index("-vf") + 1]
        self.assertIn("scale=1280:720:force_original_aspect_ratio=decrease", vf)
        self.assertIn("pad=1280:720", vf)
        self.assertEqual(args[args.index("-c:v") + 1], "libx264")
        self.assertEqual(args[args.index("-preset") + 1], "fast")
        self.assertEqual(args[args.index("-crf") + 1], "20")
        self.assertEqual(args[args.index("-b:a") + 1], "192k")
        self.assertEqual(args[-2:], ["-y", "/tmp/out.mp4"])
        self.assertNotIn("-progress", args)

    def test_builder_is_immutable(self):
        base = TranscodeCommand().input("a.mp4")
        a = base.output("x.mp4")
        b = base.output("y.mp4").mute()
        self.assertIsNone(base.output_path)
        self.assertNotIn("-af", a.build_args())
        self.assertIn("volume=0", b.build_args())

    def test_stream_copy_excludes_encoding(self):
        with self.assertRaises(ValueError):
            TranscodeCommand().input("a.mp4").video_encode().stream_copy()
        with self.assertRaises(ValueError):
            TranscodeCommand().input("a.mp4").stream_copy().audio_encode()
        args = TranscodeCommand().input("a.mp4").trim(0.0, 2.0).stream_copy().output("o.mp4").build_args()
        self.assertEqual(args[args.index("-c") + 1], "copy")
        self.assertIn("-avoid_negative_ts", args)

    def test_stream_copy_with_gain_reencodes_audio_only(self):
        args = TranscodeCommand().input("a.mp4").stream_copy().volume(0.5).output("o.mp4").build_args()
        self.assertEqual(args[args.index("-c:v") + 1], "copy")
        self.assertEqual(args[args.index("-c:a") + 1], "aac")
        self.assertEqual(args[args.index("-af") + 1], "volume=0.500")

    def test_invalid_trim(self):
        with self.assertRaises(ValueError):
            TranscodeCommand().trim(-1.0, 2.0)
        with self.assertRaises(ValueError):
            TranscodeCommand().trim(1.0, 0.0)

    def test_missing_input_or_output(self):
        with self.assertRaises(ValueError):
            TranscodeCommand().input("a.mp4").build_args()
        with self.assertRaises(ValueError):
            TranscodeCommand().output("o.mp4").build_args()

    def test_concat_list_and_manifest(self):
        cmd = (
            TranscodeCommand()
            .concat_list("/tmp/job/concat.txt", ["/tmp/job/clip_000.mp4", "/tmp/it's/clip_001.mp4"])
            .video_encode()
            .audio_encode()
            .enable_progress()
            .output("/tmp/job/output.mp4")
        )
        args = cmd.build_args()
        i = args.index("-f")
        self.assertEqual(args[i : i + 6], ["-f", "concat", "-safe", "0", "-i", "/tmp/job/concat.txt"])
        self.assertIn("-progress", args)
        self.assertEqual(args[args.index("-progress") + 1], "pipe:2")
        self.assertEqual(
            cmd.manifest_text(),
            "file '/tmp/job/clip_000.mp4'\nfile '/tmp/it'\\''s/clip_001.mp4'\n",
        )

    def test_thumbnail(self):
        args = TranscodeCommand().input("a.mp4").thumbnail(3.0).scale(320).output("t.jpg").build_args()
        self.assertEqual(args[args.index("-ss") + 1], "3.000000")
        self.assertNotIn("-t", args)
        self.assertEqual(args[args.index("-vf") + 1], "scale=320:-2")
        self.assertEqual(args[args.index("-frames:v") + 1], "1")
        self.assertNotIn("-c:v", args)

    def test_command_prepends_binary(self):
        cmd = TranscodeCommand().input("a.mp4").output("o.mp4")
        self.assertEqual(cmd.command("/opt/ffmpeg")[0], "/opt/ffmpeg")
        self.assertEqual(cmd.to_dict()["input_path"], "a.mp4")

    def test_probe_args(self):
        self.assertEqual(probe_args("x.mp4")[-1], "x.mp4")
        self.assertIn("-show_streams", probe_args("x.mp4"))


if __name__ == "__main__":
    unittest.main()
