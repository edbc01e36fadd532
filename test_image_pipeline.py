import asyncio
import io
import json
import unittest
from unittest import mock

import httpx
from PIL import Image

from file_service import FileService, is_internal_path
from image_pipeline import (
    ImageCache,
    ImageResolver,
    color_from_attributes,
    decode_image,
    first_successful,
    images_from_attributes,
    load_signature,
    parse_attributes,
    recompress_image,
)
from models import LineItem

API = "http://api.test"
CDN_IMAGE = "https://cdn.example.com/products/p7.png"


def png_bytes(size=(10, 10), color=(10, 120, 200), mode="RGB"):
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_response(**kwargs):
    return httpx.Response(200, content=png_bytes(**kwargs), headers={"content-type": "image/png"})


class RecordingHandler:
    """MockTransport handler that logs every request and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        route = self.routes.get(f"{request.url.scheme}://{request.url.host}{request.url.path}")
        if route is None:
            return httpx.Response(404)
        return route(request) if callable(route) else route

    def paths(self):
        return [r.url.path for r in self.requests]


class AttributeTests(unittest.TestCase):
    def test_malformed_json_is_empty(self):
        self.assertEqual(parse_attributes("{not json"), {})
        self.assertEqual(parse_attributes("[1, 2]"), {})
        self.assertEqual(parse_attributes(None), {})
        self.assertEqual(parse_attributes({"color": "Red"}), {"color": "Red"})

    def test_image_urls_in_every_shape(self):
        attrs = {"images": json.dumps(["a.png", "b.png"]), "image": "c.png"}
        self.assertEqual(images_from_attributes(attrs), ["a.png", "b.png", "c.png"])
        self.assertEqual(images_from_attributes({"images": ["x.png", ""]}), ["x.png"])
        self.assertEqual(images_from_attributes({"images": "/uploads/one.png"}), ["/uploads/one.png"])

    def test_color(self):
        self.assertEqual(color_from_attributes({"Color": "Sand"}), "Sand")
        self.assertEqual(color_from_attributes({"attributes": {"color": "Ink"}}), "Ink")
        self.assertEqual(color_from_attributes({}), "")

    def test_internal_paths(self):
        self.assertTrue(is_internal_path("/uploads/a.png"))
        self.assertTrue(is_internal_path("uploads/a.png"))
        self.assertFalse(is_internal_path("https://cdn.example.com/uploads/a.png"))


class RecompressTests(unittest.TestCase):
    def test_downscales_to_jpeg(self):
        out = recompress_image(png_bytes(size=(800, 400)), max_px=400, quality=70)
        self.assertEqual(out.mime, "image/jpeg")
        self.assertEqual((out.width, out.height), (400, 200))
        self.assertTrue(out.data_uri.startswith("data:image/jpeg;base64,"))

    def test_transparent_background_becomes_white(self):
        out = recompress_image(png_bytes(size=(50, 50), color=(0, 0, 0, 0), mode="RGBA"))
        with Image.open(io.BytesIO(out.data)) as im:
            pixel = im.convert("RGB").getpixel((25, 25))
        for channel in pixel:
            self.assertGreaterEqual(channel, 245)

    def test_failure_embeds_original(self):
        original = png_bytes()
        with mock.patch.object(Image.Image, "thumbnail", side_effect=OSError("boom")):
            out = recompress_image(original)
        self.assertEqual(out.data, original)
        self.assertEqual(out.mime, "image/png")

    def test_decode_rejects_garbage(self):
        with self.assertRaises(ValueError):
            decode_image(b"")
        with self.assertRaises(OSError):
            decode_image(b"definitely not an image")


class FirstSuccessfulTests(unittest.IsolatedAsyncioTestCase):
    async def test_first_non_none_wins(self):
        calls = []

        async def failing():
            calls.append("failing")
            raise httpx.ConnectError("down")

        async def empty():
            calls.append("empty")
            return None

        async def good():
            calls.append("good")
            return 3

        async def never():
            calls.append("never")
            return 4

        self.assertEqual(await first_successful([failing, empty, good, never]), 3)
        self.assertEqual(calls, ["failing", "empty", "good"])

    async def test_all_failing_gives_none(self):
        async def timeout():
            raise asyncio.TimeoutError()

        self.assertIsNone(await first_successful([timeout, timeout]))

    async def test_programming_errors_propagate(self):
        async def broken():
            raise KeyError("bug")

        with self.assertRaises(KeyError):
            await first_successful([broken])


class ImageCacheTests(unittest.TestCase):
    def test_entries_are_kept_per_product_and_url(self):
        image = decode_image(png_bytes())
        cache = ImageCache()
        cache.put(1, "a.png", None)
        cache.put(1, "b.png", image)
        cache.put(1, "b.png", None)

        self.assertIsNone(cache.get(1, "a.png").image)
        self.assertIs(cache.get(1, "b.png").image, image)
        self.assertIsNone(cache.get(1, "c.png"))
        self.assertIsNone(cache.get(2))
        self.assertIn(1, cache)
        self.assertEqual(len(cache), 1)

    def test_product_lookup_skips_failed_entries(self):
        image = decode_image(png_bytes())
        cache = ImageCache()
        cache.put(1, "a.png", None)
        self.assertIsNone(cache.get(1))
        cache.put(1, "b.png", image)
        self.assertEqual(cache.get(1).source_url, "b.png")


class ImageResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.handler = RecordingHandler({})
        self.files = FileService(base_url=API, token="secret", transport=httpx.MockTransport(self.handler))

    async def asyncTearDown(self):
        await self.files.aclose()

    async def test_variant_without_image_uses_sibling_and_fetches_once(self):
        self.handler.routes[CDN_IMAGE] = png_response()
        v1 = LineItem(product_id=7, sku="V1")
        v2 = LineItem(product_id=7, sku="V2", product_variant_attributes=json.dumps({"images": [CDN_IMAGE]}))
        resolver = ImageResolver(self.files, [v1, v2])

        first = await resolver.resolve(v1)
        second = await resolver.resolve(v2)

        self.assertIsNotNone(first)
        self.assertIs(first, second)
        self.assertEqual(len(self.handler.requests), 1)

    async def test_internal_path_goes_through_signed_url(self):
        signed = "https://cdn.example.com/signed/a.png"
        self.handler.routes[f"{API}/api/FileUpload/signed-url"] = httpx.Response(200, json={"url": signed + "?sig=1"})
        self.handler.routes[signed] = png_response()
        item = LineItem(product_id=1, sku="A", product_variant_attributes=json.dumps({"image": "/uploads/a.png"}))

        image = await ImageResolver(self.files, [item]).resolve(item)

        self.assertIsNotNone(image)
        lookup, download = self.handler.requests
        self.assertEqual(lookup.url.params["filePath"], "/uploads/a.png")
        self.assertEqual(lookup.headers["Authorization"], "Bearer secret")
        self.assertEqual(download.url.params["sig"], "1")

    async def test_signed_url_failure_falls_back_to_direct(self):
        self.handler.routes[f"{API}/api/FileUpload/signed-url"] = httpx.Response(500)
        self.handler.routes[f"{API}/uploads/a.png"] = png_response()
        item = LineItem(product_id=1, sku="A", product_variant_attributes=json.dumps({"images": ["/uploads/a.png"]}))

        image = await ImageResolver(self.files, [item]).resolve(item)

        self.assertIsNotNone(image)
        self.assertEqual(self.handler.paths(), ["/api/FileUpload/signed-url", "/uploads/a.png"])

    async def test_unreachable_image_is_blank_and_not_retried(self):
        item = LineItem(product_id=3, sku="A", product_variant_attributes=json.dumps({"image": CDN_IMAGE}))
        other = LineItem(product_id=3, sku="B")
        resolver = ImageResolver(self.files, [item, other])

        self.assertIsNone(await resolver.resolve(item))
        self.assertIsNone(await resolver.resolve(other))
        self.assertEqual(len(self.handler.requests), 1)

    async def test_failed_sibling_image_falls_through_to_next_one(self):
        self.handler.routes["https://cdn.example.com/products/b.png"] = png_response()
        rows = [
            LineItem(product_id=7, sku="V1", product_variant_attributes=json.dumps({"image": "https://cdn.example.com/products/a.png"})),
            LineItem(product_id=7, sku="V2", product_variant_attributes=json.dumps({"image": "https://cdn.example.com/products/b.png"})),
            LineItem(product_id=7, sku="V3"),
        ]
        resolver = ImageResolver(self.files, rows)

        images = [await resolver.resolve(row) for row in rows]

        self.assertTrue(all(image is not None for image in images))
        self.assertIs(images[0], images[1])
        self.assertIs(images[2], images[1])
        self.assertEqual(self.handler.paths(), ["/products/a.png", "/products/b.png"])

    async def test_shared_non_first_image_is_fetched_once(self):
        self.handler.routes["https://cdn.example.com/products/a.png"] = lambda r: png_response()
        self.handler.routes["https://cdn.example.com/products/b.png"] = lambda r: png_response()
        rows = [
            LineItem(product_id=7, sku="V1", product_variant_attributes=json.dumps({"image": "https://cdn.example.com/products/a.png"})),
            LineItem(product_id=7, sku="V2", product_variant_attributes=json.dumps({"image": "https://cdn.example.com/products/b.png"})),
            LineItem(product_id=7, sku="V3", product_variant_attributes=json.dumps({"image": "https://cdn.example.com/products/b.png"})),
        ]
        resolver = ImageResolver(self.files, rows)

        first, second, third = [await resolver.resolve(row) for row in rows]

        self.assertIsNot(first, second)
        self.assertIs(second, third)
        self.assertEqual(self.handler.paths(), ["/products/a.png", "/products/b.png"])

    async def test_row_without_any_image_makes_no_requests(self):
        item = LineItem(product_id=9, sku="A", product_variant_attributes="{broken")
        self.assertIsNone(await ImageResolver(self.files, [item]).resolve(item))
        self.assertEqual(self.handler.requests, [])


class SignatureTests(unittest.IsolatedAsyncioTestCase):
    async def test_falls_back_to_authenticated_fetch(self):
        def authed_only(request):
            if request.headers.get("Authorization") != "Bearer secret":
                return httpx.Response(401)
            return png_response(mode="P", color=3)

        handler = RecordingHandler({
            f"{API}/api/FileUpload/signed-url": httpx.Response(404),
            f"{API}/uploads/signatures/s.png": authed_only,
        })
        async with FileService(base_url=API, token="secret", transport=httpx.MockTransport(handler)) as files:
            image = await load_signature(files, "/uploads/signatures/s.png")

        self.assertIsNotNone(image)
        self.assertEqual(image.mime, "image/png")
        self.assertEqual(handler.paths(), ["/api/FileUpload/signed-url", "/uploads/signatures/s.png"])

    async def test_slow_direct_load_times_out(self):
        async def slow(request):
            if request.url.path == "/api/FileUpload/signed-url":
                await asyncio.sleep(2)
                return httpx.Response(200, json={"url": f"{API}/uploads/signatures/s.png"})
            return png_response()

        async with FileService(base_url=API, token="secret", transport=httpx.MockTransport(slow)) as files:
            image = await load_signature(files, "/uploads/signatures/s.png", timeout=0.05)

        self.assertIsNotNone(image)
        self.assertEqual(image.mime, "image/png")

    async def test_missing_signature_is_none(self):
        handler = RecordingHandler({})
        async with FileService(base_url=API, transport=httpx.MockTransport(handler)) as files:
            self.assertIsNone(await load_signature(files, ""))
            self.assertIsNone(await load_signature(files, "/uploads/signatures/gone.png"))
        self.assertEqual(len(handler.requests), 2)


if __name__ == "__main__":
    unittest.main()
